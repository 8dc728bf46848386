"""Application services built on the fabric infrastructure layer."""
