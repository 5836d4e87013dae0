"""External content feeds (RSS / Atom) with a TTL + revalidation cache.

Modules:
    parser — RSS 2.0 / Atom documents → FeedItem
    cache  — FeedCache: per-feed TTL, conditional GET, cross-feed digest
"""
