"""Loudspeaker clipping analyzer: play a reference tone, capture it, compare."""
