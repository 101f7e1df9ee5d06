"""
Trip enrichment engine.

Reference layers are loaded and tiled once per run, broadcast to matching workers, and
applied to trip pickup/dropoff points window by window; results are merged back into
one record per trip.
"""
