"""Tests for addon-publisher."""
