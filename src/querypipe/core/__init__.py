"""Core domain: logging, constants, configuration and the error taxonomy."""
