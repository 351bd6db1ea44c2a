"""Local IPC transports."""
