"""
Backup and restore orchestration for the document database.

This app provides:
- Tiered backups (manual, daily, weekly, monthly, yearly) produced with mongodump
- Compressed, optionally encrypted artifacts with count-based local retention
- Replication to S3-compatible object stores (AWS S3, Cloudflare R2, Backblaze B2)
- Verified, confirmation-gated restores with mongorestore
- Run history and outcome notifications (log, email, webhook)
"""
