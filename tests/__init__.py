"""
Point Tiles test suite

Structure:
- unit/: projection, cache, point sources, renderer, dispatcher, config, warm-up client
- integration/: Render API + Tile HTTP Server over TestClient, offline pre-render script
"""
