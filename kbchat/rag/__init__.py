"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Text extraction and markup normalization
- Document chunking with overlap
- Embedding generation
- Knowledge storage with FAISS similarity search
- Retrieval, prompt assembly and answer generation
- Ingestion and chat-turn orchestration
"""
