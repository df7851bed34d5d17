"""Knowledge-base chat: document ingestion and retrieval-augmented answers."""

__version__ = "0.1.0"
