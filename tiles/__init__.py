"""
Point Tiles — render and serve Web Mercator point-density tiles

- Reads (lat, lon) points from a partitioned store by tile bounding box
- Rasterizes translucent dots into {tile}/{z}_{x}_{y}.png (cache, atomic writes)
- Render API (:7000)  /render/{z}/{x_from}/{x_to}/{y_from}/{y_to}, /render/viewport
- Tile server (:4321) /tile/{z}_{x}_{y}.png

Entry point:
    python -m tiles --config config/params.yaml
"""
