"""Webhook inbound pipeline for Clerk user lifecycle events.

Each delivery is signature-verified, normalized into a canonical user
event, and applied idempotently to the user store.
"""
