"""
Flag Provisioner - Stable per-team challenge flags

A flag is generated lazily on first use and never changes afterwards.
Concurrent first requests all insert-or-ignore and then read back the single
stored value.
"""

from typing import Dict, List, Optional

import structlog

from instancer.core.exceptions import ContestNotFound
from instancer.domain.instances import ContestPolicy, generate_flag
from instancer.infrastructure.repositories import CatalogRepository, FlagRepository

logger = structlog.get_logger(__name__)


class FlagProvisioner:
    """Get-or-create access to team flags."""

    def __init__(
        self,
        flags: FlagRepository,
        catalog: CatalogRepository,
        default_format: Optional[str] = None,
    ):
        self.flags = flags
        self.catalog = catalog
        self.default_format = default_format

    async def get_or_create(
        self,
        team_id: int,
        contest_id: int,
        challenge_id: int,
        contest: Optional[ContestPolicy] = None,
    ) -> str:
        existing = await self.flags.get(team_id, challenge_id)
        if existing is not None:
            return existing

        if contest is None:
            contest = await self.catalog.get_contest(contest_id)
        fmt = (contest.flag_format if contest else None) or self.default_format

        await self.flags.insert_if_absent(team_id, contest_id, challenge_id, generate_flag(fmt))

        stored = await self.flags.get(team_id, challenge_id)
        if stored is None:
            raise RuntimeError(
                f"Flag for team {team_id} challenge {challenge_id} missing after insert"
            )
        logger.debug("Flag ready", team_id=team_id, challenge_id=challenge_id)
        return stored

    async def generate_all_for_contest(self, contest_id: int, team_id: int) -> List[str]:
        """Ensure the team has a flag for every public challenge of the contest."""
        contest = await self._require_contest(contest_id)
        if not await self.catalog.team_qualifies(contest, team_id):
            logger.info(
                "Team does not qualify for contest flags",
                contest_id=contest_id,
                team_id=team_id,
            )
            return []

        flags = []
        for challenge_id in await self.catalog.public_challenge_ids(contest_id):
            flags.append(await self.get_or_create(team_id, contest_id, challenge_id, contest))
        return flags

    async def generate_all_for_challenge(self, contest_id: int, challenge_id: int) -> Dict[int, str]:
        """Ensure every approved team of the contest has a flag for the challenge."""
        contest = await self._require_contest(contest_id)
        flags: Dict[int, str] = {}
        for team_id in await self.catalog.qualifying_team_ids(contest):
            flags[team_id] = await self.get_or_create(team_id, contest_id, challenge_id, contest)
        return flags

    async def list_for_challenge(self, contest_id: int, challenge_id: int) -> List[dict]:
        generated = await self.generate_all_for_challenge(contest_id, challenge_id)
        return await self.flags.list_for_challenge(contest_id, challenge_id, list(generated))

    async def _require_contest(self, contest_id: int) -> ContestPolicy:
        contest = await self.catalog.get_contest(contest_id)
        if contest is None:
            raise ContestNotFound(contest_id)
        return contest
