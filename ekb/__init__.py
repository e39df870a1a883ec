"""Enterprise knowledge base core: chunking, vector indexing and RAG querying."""

__version__ = "1.0.0"
