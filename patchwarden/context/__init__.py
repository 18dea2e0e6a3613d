"""Session-scoped semantic context: chunking, embeddings and similarity search."""
