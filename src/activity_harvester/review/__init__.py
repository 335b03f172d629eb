"""Admin review pipeline.

Sub-modules:
- ``schemas``     - tagged union of extraction schema kinds
- ``conversion``  - raw payload to ``ActivityPayload`` conversion
- ``pipeline``    - crawl submission, approval, rejection and edits
"""
