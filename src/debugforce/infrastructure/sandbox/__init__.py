"""Isolated execution of code snippets, git commands and host tools."""
