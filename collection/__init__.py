# This file makes the 'collection' directory a Python package.
# Modules are imported directly (collection.coordinator, collection.models, ...).
# database.queries imports from here too, so nothing is re-exported at package level.
