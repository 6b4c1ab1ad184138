"""Test package for the shelfwise catalog engine."""
