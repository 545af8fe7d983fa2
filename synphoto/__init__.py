# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
# SynPhoto - Synology Photos slideshow pipeline
"""
SynPhoto pulls photos from a Synology Photos server, keeps a bounded local
cache, enriches photos with capture date and location metadata, and serves
them to a display layer on a timed cadence.
"""

__version__ = "1.0.0"
__author__ = "SynPhoto"
