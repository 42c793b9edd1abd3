"""Real-time face registration and recognition backed by a Supabase table."""

__version__ = "1.0.0"
