"""Plugins shipped with dslctl."""
