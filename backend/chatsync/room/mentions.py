"""@mention autocomplete.

With the cursor at the end of the input, a trailing ``@word`` token (possibly
just ``@``) opens the candidate list. Candidates are roster members other
than the local user whose display name contains the token, case-insensitive,
in roster order, capped at ``max_results``.
"""
import re
from typing import List, Sequence

from chatsync.room.models import Member

MENTION_TOKEN = re.compile(r"@(\w*)$")

DEFAULT_MAX_RESULTS = 5

# Used when a selected member has no display name
FALLBACK_NAME = "User"


class MentionResolver:
    def __init__(self, self_user_id: str, max_results: int = DEFAULT_MAX_RESULTS) -> None:
        self.self_user_id = self_user_id
        self.max_results = max_results

    def trailing_token(self, text: str):
        """The token after ``@`` at the end of ``text``, or None if there is none."""
        match = MENTION_TOKEN.search(text)
        return match.group(1) if match else None

    def candidates(self, text: str, roster: Sequence[Member]) -> List[Member]:
        """Members matching the trailing token of ``text``."""
        token = self.trailing_token(text)
        if token is None:
            return []
        query = token.lower()

        results: List[Member] = []
        for member in roster:
            if member.user_id == self.self_user_id:
                continue
            name = (member.display_name or "").lower()
            if query and query not in name:
                continue
            results.append(member)
            if len(results) >= self.max_results:
                break
        return results

    def apply_selection(self, text: str, member: Member) -> str:
        """Replace the trailing token with ``@<full name> ``."""
        name = member.display_name or FALLBACK_NAME
        # A function replacement keeps backslashes in names literal
        return MENTION_TOKEN.sub(lambda _m: f"@{name} ", text, count=1)
