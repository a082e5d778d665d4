import json
import logging
import os
import re
from typing import Optional

import httpx

from .attestation.types import FetchError
from .config import DEFAULT_HTTP_TIMEOUT, GITHUB_API_BASE_URL, GITHUB_DOWNLOAD_BASE_URL

logger = logging.getLogger(__name__)

# Backwards compatibility for old EIF releases
_EIF_REGEX = re.compile(r'EIF hash: ([a-fA-F0-9]{64})')
_DIGEST_REGEX = re.compile(r'Digest: `([a-fA-F0-9]{64})`')


def _bundle_cache_path(cache_dir: str, repo: str, digest: str) -> str:
    """Generate a safe filepath for the attestation bundle cache."""
    safe_repo = repo.replace('/', '_')
    return os.path.join(cache_dir, f"bundle_{safe_repo}_{digest}.json")


async def _get(client: Optional[httpx.AsyncClient], url: str, timeout: float) -> httpx.Response:
    if client is not None:
        response = await client.get(url, timeout=timeout, follow_redirects=True)
    else:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
            response = await owned.get(url)
    response.raise_for_status()
    return response


def digest_from_release_body(body: str) -> Optional[str]:
    """Extract the release digest from a release description, if present."""
    for regex in (_EIF_REGEX, _DIGEST_REGEX):
        matches = regex.search(body or "")
        if matches:
            return matches.group(1)
    return None


async def fetch_latest_digest(
    repo: str,
    client: Optional[httpx.AsyncClient] = None,
    api_base_url: str = GITHUB_API_BASE_URL,
    download_base_url: str = GITHUB_DOWNLOAD_BASE_URL,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> str:
    """
    Gets the latest release and attestation digest of a repo.

    Args:
        repo: The GitHub repository in format "owner/repo"

    Returns:
        The digest string

    Raises:
        FetchError: If there's any error fetching or parsing the data
    """
    url = f"{api_base_url}/repos/{repo}/releases/latest"
    try:
        response_data = (await _get(client, url, timeout)).json()
        tag_name = response_data["tag_name"]
        body = response_data.get("body") or ""
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch release from {url}: {e}") from e
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise FetchError(f"Invalid release response from {url}: {e}") from e

    digest = digest_from_release_body(body)
    if digest:
        return digest

    # Fallback option: fetch digest from github special endpoint
    digest_url = f"{download_base_url}/{repo}/releases/download/{tag_name}/tinfoil.hash"
    logger.debug("Release body has no digest, falling back to %s", digest_url)
    try:
        response = await _get(client, digest_url, timeout)
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch attestation digest: {e}") from e
    return response.text.strip()


async def fetch_attestation_bundle(
    repo: str,
    digest: str,
    client: Optional[httpx.AsyncClient] = None,
    api_base_url: str = GITHUB_API_BASE_URL,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    cache_dir: Optional[str] = None,
) -> str:
    """
    Fetches the sigstore bundle from a repo for a given repo and digest.
    When ``cache_dir`` is set, bundles are kept on disk by (repo, digest).

    Returns:
        The sigstore bundle as a JSON string

    Raises:
        FetchError: If there's any error fetching or parsing the data
    """
    cache_path = _bundle_cache_path(cache_dir, repo, digest) if cache_dir else None

    if cache_path and os.path.isfile(cache_path):
        try:
            with open(cache_path, 'r', encoding='utf-8') as f:
                cached = f.read()
            json.loads(cached)
            logger.debug("Attestation bundle cache hit for %s", digest)
            return cached
        except (OSError, ValueError) as e:
            logger.warning("Discarding unreadable bundle cache %s: %s", cache_path, e)
            try:
                os.remove(cache_path)
            except OSError:
                pass

    url = f"{api_base_url}/repos/{repo}/attestations/sha256:{digest}"
    try:
        response_data = (await _get(client, url, timeout)).json()
    except httpx.HTTPError as e:
        raise FetchError(f"Error fetching attestation from {url}: {e}") from e
    except ValueError as e:
        raise FetchError(f"Error decoding JSON response from {url}: {e}") from e

    try:
        bundle_json = json.dumps(response_data["attestations"][0]["bundle"])
    except (KeyError, IndexError, TypeError) as e:
        raise FetchError(f"Invalid attestation response format from {url}: {e}") from e

    if cache_path:
        try:
            os.makedirs(cache_dir, exist_ok=True)
            with open(cache_path, 'w', encoding='utf-8') as f:
                f.write(bundle_json)
        except OSError as e:
            logger.warning("Failed to write cache file %s: %s", cache_path, e)

    return bundle_json
