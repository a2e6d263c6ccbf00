"""Domain hook bus and the peer sync/broadcast layer."""
