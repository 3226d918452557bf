"""Daily usage quota."""
