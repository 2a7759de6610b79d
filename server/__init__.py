# =============================================================================
# Trifecta Overlay - Relay Package
# =============================================================================
# This package contains the relay-side components responsible for accepting
# client WebSocket connections, fanning frames out to the inference backend
# under a global concurrency cap, and normalizing the merged results.
# =============================================================================
