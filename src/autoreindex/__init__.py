"""autoreindex - unattended rebuilding of bloated PostgreSQL B-tree indexes."""

__version__ = "0.4.0"
