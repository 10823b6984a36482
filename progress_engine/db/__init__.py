"""Progress store: in-memory and SQLAlchemy backends."""
