"""Local knowledge base core for a desktop LLM chat client."""
