"""Role store, bindings, caching, events and seeding."""
