"""Tests for the embedding engine.

Unit tests run entirely in-process against fake inference sessions and an
in-memory tokenizer, so no model files or accelerators are required.
"""
