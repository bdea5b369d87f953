"""Real-time room chat: session registry, broadcast router and room session protocol."""
