"""Receipt ingestion from mailboxes with currency inference."""
