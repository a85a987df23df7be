"""Disk image storage: partition table codec and exceptions."""
