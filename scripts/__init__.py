"""Command line entry points for DocManifest."""
