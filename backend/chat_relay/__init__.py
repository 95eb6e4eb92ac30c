"""Chat relay: template-driven chat turns forwarded to a completion gateway, with optional SQL history."""
