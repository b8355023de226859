"""SQLite persistence: SQLModel tables, migrations and the JSON column codec."""
