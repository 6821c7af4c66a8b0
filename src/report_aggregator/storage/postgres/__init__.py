"""PostgreSQL persistence for reports and the events inbox."""
