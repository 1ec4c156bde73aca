"""Token-budgeted context assembly for step prompts."""
