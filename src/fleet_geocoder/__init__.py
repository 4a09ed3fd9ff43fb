"""Reverse-geocoding pipeline for fleet-tracking device positions."""
