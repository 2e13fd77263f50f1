"""
GitHub API client service.
Source-control collaborator: merge-base lookups and file contents at a ref.
"""
from typing import Optional, Protocol
import base64
import logging

import httpx

from costgate.core.config import config


logger = logging.getLogger(__name__)


class SourceControlClient(Protocol):
    """What the Plan stage needs from the source-control host."""

    async def merge_base(self, base_ref: str, head_ref: str) -> str:
        ...

    async def get_file(self, ref: str, path: str) -> Optional[str]:
        ...


class SourceControlError(Exception):
    """Raised when the source-control host cannot answer a request."""
    pass


class GitHubClient:
    """Service for making GitHub API calls against one repository."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        repository: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize GitHub client.

        Args:
            access_token: GitHub token (config.GITHUB_TOKEN if None)
            repository: "owner/repo" (config.GITHUB_REPOSITORY if None)
            base_url: API base URL (config.GITHUB_API_BASE_URL if None)
            transport: Optional httpx transport, used by tests
        """
        self.repository = repository or config.GITHUB_REPOSITORY
        self.base_url = (base_url or config.GITHUB_API_BASE_URL).rstrip("/")
        self._transport = transport
        token = access_token if access_token is not None else config.GITHUB_TOKEN
        self.headers = {"Accept": "application/vnd.github.v3+json"}
        if token:
            self.headers["Authorization"] = f"token {token}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=30.0,
            transport=self._transport,
        )

    async def merge_base(self, base_ref: str, head_ref: str) -> str:
        """
        Find the commit the head ref branched from.
        Uses GET /repos/{owner}/{repo}/compare/{base}...{head}

        Raises:
            SourceControlError: If the comparison fails
        """
        async with self._client() as client:
            try:
                response = await client.get(f"/repos/{self.repository}/compare/{base_ref}...{head_ref}")
                response.raise_for_status()
            except httpx.HTTPError as error:
                raise SourceControlError(
                    f"Failed to compare {base_ref}...{head_ref}: {str(error)}"
                ) from error

        sha = response.json().get("merge_base_commit", {}).get("sha")
        if not sha:
            raise SourceControlError(f"No merge base between {base_ref} and {head_ref}")
        return sha

    async def get_file(self, ref: str, path: str) -> Optional[str]:
        """
        Fetch a file's text at a ref.
        Uses GET /repos/{owner}/{repo}/contents/{path}?ref={ref}

        Returns:
            File contents, or None if the file does not exist at that ref

        Raises:
            SourceControlError: If GitHub fails for any other reason
        """
        async with self._client() as client:
            try:
                response = await client.get(
                    f"/repos/{self.repository}/contents/{path}",
                    params={"ref": ref},
                )
                if response.status_code == 404:
                    logger.info("%s not found at %s", path, ref)
                    return None
                response.raise_for_status()
            except httpx.HTTPError as error:
                raise SourceControlError(f"Failed to fetch {path} at {ref}: {str(error)}") from error

        payload = response.json()
        if payload.get("encoding") != "base64":
            raise SourceControlError(f"Unexpected encoding for {path}: {payload.get('encoding')}")
        return base64.b64decode(payload.get("content", "")).decode("utf-8")
