"""
SD Models Manager backend.

Catalog synchronization, Civitai enrichment and the HTTP API over a set of
model directories.
"""
