from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from bmsauth.storage.models import Principal, SessionRecord


class CredentialStore(Protocol):
    """Keyed record store the auth core depends on.

    Implementations must raise ``DuplicateIdentifier`` from ``create`` when the
    normalized identifier is taken, and return copies so callers cannot
    mutate stored records without going through the setters.
    """

    def find_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def find_by_id(self, user_id: str) -> Optional[Principal]: ...

    def create(self, identifier: str, password_hash: str, role: str) -> Principal: ...

    def set_mfa_secret(self, user_id: str, secret: Optional[str]) -> None: ...

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None: ...

    def set_pending_code(
        self,
        user_id: str,
        code: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> None: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def update_role(self, user_id: str, role: str) -> Optional[Principal]: ...

    def list_principals(self) -> List[Principal]: ...

    def create_session(self, record: SessionRecord) -> SessionRecord: ...

    def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def count_sessions(self) -> int: ...
