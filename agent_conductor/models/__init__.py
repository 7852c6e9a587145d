"""
Data models and error types for Agent Conductor.
"""
