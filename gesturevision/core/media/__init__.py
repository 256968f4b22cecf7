"""Media server integration: MediaMTX API client and path reconciliation."""
