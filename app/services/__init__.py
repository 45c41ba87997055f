"""Chat core services: store reads, cache, membership, messages and accounts."""
