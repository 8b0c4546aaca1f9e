"""HTTP surface: OIDC login, admin role management, health probes."""
