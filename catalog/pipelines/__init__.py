"""Catalog ingestion pipeline stages.

Each stage is callable on its own; ``ingest`` wires them together into the
background run started for every accepted upload.
"""
