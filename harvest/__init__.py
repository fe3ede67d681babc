"""Harvest product catalog service."""
