"""Shared utilities: exceptions, logging, audit logging and configuration."""
