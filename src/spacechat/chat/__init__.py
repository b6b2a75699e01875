"""Conversation turns, threads and tool execution."""
