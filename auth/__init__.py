"""auth/ -- The schema-mapped authentication provider.

Layer rule: auth/ imports from core/, datastore/ and realm/.
main.py and host applications import from auth/, not the other way around.
"""
