"""Backup, restore and recovery engines for dbtools."""
