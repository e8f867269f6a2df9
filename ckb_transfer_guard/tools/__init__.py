"""Operator tools for the transfer guard."""
