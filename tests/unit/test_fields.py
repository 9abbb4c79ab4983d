"""Unit tests for hoa_etl.fields."""

from datetime import date
from decimal import Decimal

from hoa_etl.fields import (
    ABSENT,
    LINKS,
    NUMBER,
    SELECT,
    TEXT,
    FieldValue,
    RecordFields,
    first_value,
    render_number,
)


class TestFieldValue:
    def test_string_is_trimmed_text(self):
        assert FieldValue.from_raw("  Owner ") == FieldValue(TEXT, "Owner")

    def test_blank_string_is_absent(self):
        assert FieldValue.from_raw("   ").kind == ABSENT

    def test_number(self):
        assert FieldValue.from_raw(12).kind == NUMBER

    def test_select_object(self):
        fv = FieldValue.from_raw({"id": "sel1", "name": "Owner", "color": "blueLight2"})
        assert fv == FieldValue(SELECT, "Owner")

    def test_select_object_without_name_is_absent(self):
        assert FieldValue.from_raw({"id": "sel1"}).is_absent

    def test_links(self):
        assert FieldValue.from_raw(["recA", " recB "]) == FieldValue(LINKS, ("recA", "recB"))

    def test_empty_list_is_absent(self):
        assert FieldValue.from_raw([]).is_absent

    def test_checkbox(self):
        assert FieldValue.from_raw(True).as_text() == "true"

    def test_none_is_absent(self):
        assert FieldValue.from_raw(None).as_text() is None


class TestRenderNumber:
    def test_integral_float_drops_point_zero(self):
        assert render_number(9171234567.0) == "9171234567"

    def test_fraction_kept(self):
        assert render_number(2.5) == "2.5"


class TestRecordFields:
    def setup_method(self):
        self.values = RecordFields({
            "Block": 1,
            "Status": {"name": "Owner"},
            "Length of Residency": "12 years",
            "Amount Paid": "1,500",
            "Date Paid": "03/15/24",
            "Member Name": ["recHO1", "recHO2"],
            "Contact No": 9171234567.0,
            "Empty": "",
        })

    def test_number_renders_as_text(self):
        assert self.values.text("Block") == "1"

    def test_phone_number_float(self):
        assert self.values.text("Contact No") == "9171234567"

    def test_select_label(self):
        assert self.values.select_label("Status") == "Owner"

    def test_integer_from_text(self):
        assert self.values.integer("Length of Residency") == 12

    def test_amount(self):
        assert self.values.amount("Amount Paid") == Decimal("1500")

    def test_date(self):
        assert self.values.date("Date Paid") == date(2024, 3, 15)

    def test_links(self):
        assert self.values.links("Member Name") == ("recHO1", "recHO2")
        assert self.values.first_link("Member Name") == "recHO1"

    def test_first_links_skips_missing_names(self):
        assert self.values.first_links("Nope", "Member Name") == ("recHO1", "recHO2")

    def test_links_on_text_field_is_empty(self):
        assert self.values.links("Block") == ()

    def test_missing_field_everywhere_none(self):
        assert self.values.text("Nope") is None
        assert self.values.integer("Nope") is None
        assert self.values.date("Nope") is None
        assert self.values.first_link("Nope") is None

    def test_presence(self):
        assert "Block" in self.values
        assert "Empty" not in self.values
        assert not self.values.is_present(None)

    def test_first_text(self):
        assert self.values.first_text("Empty", "Block") == "1"

    def test_first_value(self):
        assert first_value(["Nope", "Amount Paid"], self.values.amount) == Decimal("1500")
        assert first_value(["Nope"], self.values.amount) is None
