"""Image push and registry logout.

Pushing is optional (the deploy input); logging out of every registry the run
logged into is not. ``push_and_cleanup`` always ends with ``logout_all``, and
``logout_all`` never raises, so it is also safe to call from the runner's
error path after an earlier stage failed.
"""

from __future__ import annotations

from collections.abc import Iterable

from ecr_deploy.errors import PushError
from ecr_deploy.logging import get_logger
from ecr_deploy.pipeline.registry import PushResult, RegistryClient
from ecr_deploy.pipeline.state import RunState
from ecr_deploy.pipeline.tags import TagSet


class PushCleanupCoordinator:
    """Pushes the built image and releases registry sessions.

    Attributes:
        client: Registry client performing docker push and logout
        logger: Structured logger instance
    """

    def __init__(self, client: RegistryClient) -> None:
        self.client = client
        self.logger = get_logger(__name__)

    async def push(
        self,
        base_image: str,
        tag_set: TagSet,
        logged_in_hosts: Iterable[str],
    ) -> list[PushResult]:
        """Push every tag of the primary repository, then of each logged-in extra repository.

        Extra repositories on a registry without an active login are skipped
        with a warning.

        Args:
            base_image: Primary repository (container base, without tag)
            tag_set: Planned tags; extra repositories are taken from it
            logged_in_hosts: Registry hosts with an active docker login

        Returns:
            One PushResult per pushed repository, primary first

        Raises:
            PushError: On the first repository that fails to push
        """
        authenticated = set(logged_in_hosts)
        repositories = [base_image]
        for repository in tag_set.repositories():
            if repository == base_image:
                continue
            host = repository.split("/", 1)[0]
            if host not in authenticated:
                self.logger.warning(
                    "push_skipped_not_logged_in",
                    repository=repository,
                    host=host,
                )
                continue
            repositories.append(repository)

        results: list[PushResult] = []
        for repository in repositories:
            result = await self.client.push_all_tags(repository)
            if not result.success:
                raise PushError(
                    f"docker push --all-tags {repository} failed: {result.error}",
                    hint="Check that the repository exists in ECR and the access key may push to it.",
                )
            results.append(result)
        return results

    async def logout_all(self, state: RunState) -> None:
        """Log out of every logged-in registry in login order. Never raises."""
        for host in list(state.logged_in_hosts):
            await self.client.logout(host)
            state.record_logout(host)

    async def push_and_cleanup(
        self,
        deploy: bool,
        base_image: str,
        tag_set: TagSet,
        state: RunState,
    ) -> list[PushResult]:
        """Push when deploy is enabled, then log out of all registries.

        Returns:
            Push results; empty when deploy is disabled
        """
        try:
            if not deploy:
                self.logger.info("push_skipped", reason="deploy disabled")
                return []
            results = await self.push(base_image, tag_set, state.logged_in_hosts)
            self.logger.info(
                "push_completed",
                repositories=[r.repository for r in results],
            )
            return results
        finally:
            await self.logout_all(state)
