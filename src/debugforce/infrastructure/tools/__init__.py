"""Tool server connections, agent tools and tool-call format conversion."""
