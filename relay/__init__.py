"""
jam-relay: on-demand HTTP relay for live Jamulus audio.

Run with: python -m relay
"""

__version__ = "0.1.0"
