"""SQLite-backed entity store: schema, migrations, and repositories."""
