"""Policy resolution from config/settlement_policy.json."""
