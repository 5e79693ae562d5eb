"""crm_sync: OAuth credential lifecycle and calendar/email synchronization service."""
