"""TeiqR chat backend."""
