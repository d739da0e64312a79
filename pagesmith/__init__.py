"""pagesmith: JSON-resource backed page rendering with sandboxed preprocessors."""

__version__ = "0.4.0"
