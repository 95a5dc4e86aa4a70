"""
RAG (Retrieval Augmented Generation) package for ragbot.

Looks up knowledge base documents relevant to each incoming WhatsApp message
and turns them into a system message for the completion request.

Components:
    - embedder: OpenAI embedding function with vector validation
    - chunk_store: ChromaDB client factory and the in-process fake store
    - retriever: Lazily resolved collection + knowledge context assembly
"""
