"""
Skyscraper Application Layer

Key Components:
- config.py: Configuration management using Pydantic settings
- orchestrator.py: The authentication state machine (login, restore, logout)
- cli.py: Command line entry point and logging setup
"""
