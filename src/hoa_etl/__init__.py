"""hoa_etl: Airtable → PostgreSQL migration pipeline for the HOA app."""
