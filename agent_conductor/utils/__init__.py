"""
Configuration, logging and retry utilities for Agent Conductor.
"""
