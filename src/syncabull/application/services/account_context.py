"""Per-account context handed to the enumerator and the download scheduler.

Hey future me - no globals for "the current account". Everything that needs credentials
gets an AccountContext and asks IT for a token. That keeps multi-account sync honest.
"""

from dataclasses import dataclass

from syncabull.application.services.token_manager import TokenManager
from syncabull.domain.entities import AccessToken, Account


@dataclass
class AccountContext:
    """One account plus the way to obtain its access token."""

    account: Account
    token_manager: TokenManager

    @property
    def account_id(self) -> str:
        return self.account.id

    async def access_token(self) -> AccessToken:
        return await self.token_manager.get_valid_access_token(self.account.id)

    async def invalidate(self, token: str | None = None) -> None:
        """Report a 401 so the next access_token() call refreshes."""
        await self.token_manager.invalidate(self.account.id, token)
