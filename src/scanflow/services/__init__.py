"""Services for the scan extraction worker."""
