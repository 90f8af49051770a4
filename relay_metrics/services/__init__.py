"""Pipeline components and read services."""
