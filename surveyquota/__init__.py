"""Survey quota engine: admit respondents into quota buckets and count completes."""

__version__ = "0.1.0"
