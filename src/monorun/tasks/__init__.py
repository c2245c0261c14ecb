"""Task packages live here.

A package exposes decorated tasks plus a `tasks()` composition that a
config module scopes with `with_options(...)`. Keep one package per tool
family.
"""
