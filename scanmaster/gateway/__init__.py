"""ScanMaster - HTTP gateway: envelope and middleware."""
