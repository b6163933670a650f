"""HTTP server package — FastAPI routes and the merge job manager.

RULES:
- The app owns one AssetStore and one MergeJobManager
- Workers start and stop with the app lifespan
"""
