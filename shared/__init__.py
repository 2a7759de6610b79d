# =============================================================================
# Trifecta Overlay - Shared Package
# =============================================================================
# Wire schemas, message parsing and the packbits mask codec used by both the
# edge client and the relay.
# =============================================================================
