"""dbtools - MySQL/MariaDB backup, restore and point-in-time recovery."""

__version__ = "1.0.0"
