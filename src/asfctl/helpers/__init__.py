"""Operator tools that run alongside an installation."""
