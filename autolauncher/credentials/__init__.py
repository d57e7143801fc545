"""凭据解析。"""

from autolauncher.credentials.vault import ConfigCredentialVault

__all__ = ["ConfigCredentialVault"]
