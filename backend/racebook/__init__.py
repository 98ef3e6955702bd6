"""Race-control lap ledger and parimutuel pool settlement backend."""
