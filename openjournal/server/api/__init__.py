"""Route modules for the backend proxy, one per /api endpoint."""
