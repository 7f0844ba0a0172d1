"""
Entry point for running the session_estimation module.

Usage:
    python -m applications.session_estimation [command] [options]
"""
from .cli import main

if __name__ == "__main__":
    main()
