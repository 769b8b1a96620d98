"""Data service: publishes log events onto the topic exchange."""
