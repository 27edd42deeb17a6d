"""livechat: live support chat orchestration."""

__version__ = "0.1.0"
