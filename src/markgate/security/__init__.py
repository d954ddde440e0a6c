# Security primitives: token encryption, PKCE, secret hashing.
# Created: 2026-10-06
