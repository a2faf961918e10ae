"""Upload transports used by the release publisher."""

from __future__ import annotations

import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import requests
from requests import Response, Session
from requests.exceptions import RequestException

from ..schemas.config import to_bool
from ..secrets import Secret
from .models import UploadRequest, UploadResult


class UploadError(RuntimeError):
    """Raised when a transport fails to upload an artifact."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StorageAdapter(ABC):
    name: str
    requires_secret: bool = False

    @abstractmethod
    def upload(self, request: UploadRequest, secret: Optional[Secret]) -> UploadResult:
        ...


class NoOpAdapter(StorageAdapter):
    name = "noop"

    def upload(self, request: UploadRequest, secret: Optional[Secret]) -> UploadResult:
        return UploadResult(
            adapter=self.name,
            status="skipped",
            name=request.name,
            logs=[f"NoOp adapter selected; {request.path} left in place for tag {request.tag}."],
        )


class CommandAdapter(StorageAdapter):
    """Run a shell command per artifact; ``{file}``, ``{name}`` and ``{tag}`` are substituted."""

    name = "command"

    def __init__(self, command: str, env: Optional[Dict[str, str]] = None) -> None:
        self.command = command
        self.env = env or {}

    def upload(self, request: UploadRequest, secret: Optional[Secret]) -> UploadResult:
        cmd = self._render_command(request)
        env = {**os.environ, **self.env, "CI_RELEASE_TAG": request.tag, "CI_RELEASE_FILE": str(request.path)}
        if secret:
            env["CI_RELEASE_TOKEN"] = secret.reveal()
        logs = [f"Executing upload command: {cmd}"]
        proc = subprocess.run(
            cmd,
            shell=True,
            check=False,
            capture_output=True,
            text=True,
            env=env,
        )
        if proc.stdout:
            logs.append(proc.stdout.strip())
        if proc.stderr:
            logs.append(proc.stderr.strip())
        if proc.returncode != 0:
            raise UploadError(f"Upload command exited with {proc.returncode} for {request.name}.")
        return UploadResult(
            adapter=self.name,
            status="succeeded",
            name=request.name,
            logs=logs,
            details={"returncode": proc.returncode},
        )

    def _render_command(self, request: UploadRequest) -> str:
        replacements = {
            "{file}": shlex.quote(str(request.path)),
            "{name}": shlex.quote(request.name),
            "{tag}": shlex.quote(request.tag),
        }
        command = self.command
        for placeholder, value in replacements.items():
            command = command.replace(placeholder, value)
        return command


class GitHubReleasesAdapter(StorageAdapter):
    """Upload assets to a GitHub release, creating the release for the tag when absent."""

    name = "releases"
    requires_secret = True

    def __init__(
        self,
        repo: str,
        *,
        api_url: str = "https://api.github.com",
        uploads_url: str = "https://uploads.github.com",
        draft: bool = False,
        prerelease: bool = False,
        timeout: int = 60,
        session: Optional[Session] = None,
    ) -> None:
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.uploads_url = uploads_url.rstrip("/")
        self.draft = draft
        self.prerelease = prerelease
        self.timeout = timeout
        self.session = session

    def upload(self, request: UploadRequest, secret: Optional[Secret]) -> UploadResult:
        if not secret:
            raise UploadError("GitHub releases upload requires an API key.", retryable=False)
        if not request.tag:
            raise UploadError("GitHub releases upload requires a tag.", retryable=False)

        session = self.session or requests.Session()
        headers = {
            "Authorization": f"Bearer {secret.reveal()}",
            "Accept": "application/vnd.github+json",
        }
        release = self._ensure_release(session, request.tag, headers)
        logs = [f"Uploading {request.name} to GitHub release {self.repo}@{request.tag}."]

        url = f"{self.uploads_url}/repos/{self.repo}/releases/{release['id']}/assets"
        try:
            with request.path.open("rb") as handle:
                response: Response = session.post(
                    url,
                    headers={**headers, "Content-Type": "application/octet-stream"},
                    params={"name": request.name},
                    data=handle,
                    timeout=self.timeout,
                )
        except RequestException as exc:
            raise UploadError(f"Asset upload failed for {request.name}: {exc}") from exc
        except OSError as exc:
            raise UploadError(f"Cannot read artifact {request.path}: {exc}", retryable=False) from exc

        if response.status_code not in (200, 201):
            raise UploadError(
                f"Asset upload for {request.name} returned {response.status_code}: {response.text or response.reason}",
                retryable=_is_retryable(response.status_code),
            )

        asset = _json_body(response, f"asset upload for {request.name}")
        return UploadResult(
            adapter=self.name,
            status="succeeded",
            name=request.name,
            url=asset.get("browser_download_url"),
            logs=logs,
            details={"release": release.get("html_url"), "asset_id": asset.get("id")},
        )

    def _ensure_release(self, session: Session, tag: str, headers: Mapping[str, str]) -> Dict[str, Any]:
        lookup_url = f"{self.api_url}/repos/{self.repo}/releases/tags/{tag}"
        try:
            response = session.get(lookup_url, headers=dict(headers), timeout=self.timeout)
            if response.status_code == 200:
                return _json_body(response, f"release lookup for {tag}")
            if response.status_code != 404:
                raise UploadError(
                    f"Release lookup for {tag} returned {response.status_code}: {response.text or response.reason}",
                    retryable=_is_retryable(response.status_code),
                )
            response = session.post(
                f"{self.api_url}/repos/{self.repo}/releases",
                headers=dict(headers),
                json={
                    "tag_name": tag,
                    "name": tag,
                    "draft": self.draft,
                    "prerelease": self.prerelease,
                },
                timeout=self.timeout,
            )
        except RequestException as exc:
            raise UploadError(f"Release lookup for {tag} failed: {exc}") from exc

        if response.status_code != 201:
            raise UploadError(
                f"Release creation for {tag} returned {response.status_code}: {response.text or response.reason}",
                retryable=_is_retryable(response.status_code),
            )
        return _json_body(response, f"release creation for {tag}")


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def _json_body(response: Response, action: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise UploadError(f"GitHub returned a non-JSON body for {action}: {exc}", retryable=False) from exc
    if not isinstance(payload, dict):
        raise UploadError(f"GitHub returned an unexpected body for {action}.", retryable=False)
    return payload


def build_adapter(name: str, options: Optional[Mapping[str, object]] = None) -> StorageAdapter:
    opts = dict(options or {})
    lowered = (name or "noop").lower()
    if lowered in ("noop", "none"):
        return NoOpAdapter()
    if lowered in ("cmd", "command", "script"):
        command = opts.get("command")
        if not command:
            raise ValueError("Command adapter requires option command=...")
        env = {key[len("env.") :]: str(value) for key, value in opts.items() if key.startswith("env.")}
        return CommandAdapter(command=str(command), env=env)
    if lowered in ("releases", "github", "gh"):
        repo = opts.get("repo")
        if not repo:
            raise ValueError("GitHub releases adapter requires a repository (deploy.repo or --repo owner/name).")
        return GitHubReleasesAdapter(
            repo=str(repo),
            api_url=str(opts.get("api-url", "https://api.github.com")),
            uploads_url=str(opts.get("uploads-url", "https://uploads.github.com")),
            draft=to_bool(opts.get("draft")),
            prerelease=to_bool(opts.get("prerelease")),
        )
    raise ValueError(f"Unknown release provider '{name}'")
