"""realm/ -- Turns sparse realm settings into an immutable, schema-checked RealmConfig.

Layer rule: realm/ imports from core/ and datastore/ only. It never imports from auth/.
"""
