"""Catalog backend package: version ledger models, stores, pipelines, APIs.

This package validates uploaded provider catalogs, stages their items,
embeds and publishes them to the vector index, and cuts the provider over
to the new catalog version.
"""
