"""ScanMaster - Admin API."""
