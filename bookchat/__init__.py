"""
Book discovery chat service.

The package wires an LLM completion backend, the Open Library catalogue
and a small SQLite store together so that a conversational reply can be
turned into a handful of real book cards.
"""
