"""Conversation data model and the chat store."""
