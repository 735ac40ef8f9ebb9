"""Speech dispatch backend for a virtual on-screen narrator."""

__all__: list[str] = []
