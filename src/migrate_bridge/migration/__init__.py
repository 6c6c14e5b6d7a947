"""Migration engine: identity map, admission, field pipeline and run control."""
