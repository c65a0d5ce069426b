"""Prompt templates for triage and scenario investigation."""
