from crm_sync.application.use_cases.accounts.connect_account import AccountConnector

__all__ = ["AccountConnector"]
