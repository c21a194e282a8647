"""Report state: parameter store, gated stages and the session that owns them."""
