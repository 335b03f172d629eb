"""Scraping execution engine.

Sub-modules:
- ``policies``           - per-domain error policies and the immutable client config
- ``extraction_client``  - async httpx client for the extraction collaborator
- ``runner``             - bounded-concurrency batch runner (``ExecutionEngine``)
- ``executor``           - runs due scheduler tasks through the engine
"""
