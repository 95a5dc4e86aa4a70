"""WhatsApp assistant that answers with OpenAI, grounded in a ChromaDB knowledge base."""
