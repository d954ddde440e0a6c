# Upstream identity provider client.
# Created: 2026-10-09
