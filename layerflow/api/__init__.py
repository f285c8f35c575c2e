"""HTTP API for layerflow."""
