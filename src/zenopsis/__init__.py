"""Zenopsis: chat-monitoring bot with a durable deferred-task queue."""
