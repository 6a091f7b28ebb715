"""Authentication for trusted producers.

Learn: One path only — services that publish to the delivery bridge's
internal port hold a signed service token. Everything user-facing uses
caller-supplied ids.
"""
