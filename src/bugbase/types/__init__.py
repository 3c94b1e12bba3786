"""TypedDict shapes for dict-valued returns and wire payloads."""
