"""datastore/ -- Schema access facade and its SQLAlchemy Core implementation.

Layer rule: datastore/ imports only core/ and third-party libraries.
realm/ and auth/ import from datastore/, not the other way around.
"""
