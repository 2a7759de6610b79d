# =============================================================================
# Trifecta Overlay - Edge Client Package
# =============================================================================
# This package contains the client-side components: frame sources, the
# rate- and backpressure-gated frame sampler, the relay connection, and the
# compositing renderer that draws annotations onto the live video.
# =============================================================================
