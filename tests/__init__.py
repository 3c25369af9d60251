"""Test suite for DRMS offline sync."""
