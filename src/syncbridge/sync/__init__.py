"""Webhook synchronization engine -- verification, identity mapping, routing and provisioning.

Provides the signature verifier, mapping and configuration stores, contact
resolver, call/message activity pipeline with two-phase enrichment, CRM
record sync, backfill, and atomic webhook provisioning. ``SyncIntegration``
assembles them for one integration instance.
"""
