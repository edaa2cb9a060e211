"""Upscale job models and image boundary codecs."""
