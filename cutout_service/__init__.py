"""
Background removal service package.

Exposes the segmentation provider, the mask compositor, the processing
orchestrator, cloud persistence clients, and the FastAPI application.
"""
