"""auth/ -- Identity and access management package for SheetFlow.

Layer rule: auth/ imports only stdlib, third-party libraries and core.config.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around.
"""
