"""基于配置文件的凭据解析。"""

from loguru import logger

from autolauncher.config.schema import Config
from autolauncher.process.types import CredentialSecret


class ConfigCredentialVault:
    """按角色的 credential_id 在配置的 credentials 列表中查找凭据。"""

    def __init__(self, config: Config):
        self.config = config

    async def resolve_secret(self, resource_id: str) -> CredentialSecret | None:
        character = self.config.get_character(resource_id)
        if character is None or not character.credential_id:
            return None

        credential = self.config.get_credential(character.credential_id)
        if credential is None:
            logger.warning(f"凭据库：角色 {resource_id} 引用了不存在的凭据 {character.credential_id}")
            return None
        return CredentialSecret(username=credential.username, password=credential.password)
