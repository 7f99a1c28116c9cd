"""Source dataset downloads: GeoJSON with mirrors, Natural Earth archives."""

from __future__ import annotations

import hashlib
import json
import logging
import time
import zipfile
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib.parse import urlsplit

import requests

from .config import CollectionConfig, DownloadConfig
from .errors import NetworkError, NotFoundError, ValidationError

_LOGGER = logging.getLogger("tilebuilder.sources")

_RETRYABLE_HTTP_STATUS = {403, 429, 500, 502, 503, 504}
_MAX_RETRY_DELAY_S = 300.0
_SHAPEFILE_MARKER = "admin_0_countries"


class HttpDownloader:
    """Blocking downloads with retry on retryable statuses.

    Runs in a worker thread when called from the async pipeline.
    """

    def __init__(
        self,
        cfg: DownloadConfig,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": cfg.user_agent})
        self._sleep = sleep

    def fetch(self, url: str) -> bytes:
        attempts = self.cfg.max_retries + 1
        for attempt in range(attempts):
            try:
                response = self._session.get(url, timeout=self.cfg.request_timeout_s)
            except requests.RequestException as exc:
                if attempt >= self.cfg.max_retries:
                    raise NetworkError(f"GET {url} failed: {exc}") from exc
                delay_s = self._retry_delay_s(attempt)
                _LOGGER.warning(
                    "Request error for %s (%s); retrying in %.1fs (%d/%d)",
                    url,
                    exc,
                    delay_s,
                    attempt + 1,
                    self.cfg.max_retries,
                )
                self._sleep(delay_s)
                continue
            if response.status_code not in _RETRYABLE_HTTP_STATUS:
                if response.status_code >= 400:
                    raise NetworkError(f"GET {url} failed: HTTP {response.status_code}")
                return response.content
            if attempt >= self.cfg.max_retries:
                raise NetworkError(f"GET {url} failed: HTTP {response.status_code} after {attempts} attempt(s)")
            delay_s = self._retry_delay_s(attempt)
            _LOGGER.warning(
                "Retryable response %s for %s; retrying in %.1fs (%d/%d)",
                response.status_code,
                url,
                delay_s,
                attempt + 1,
                self.cfg.max_retries,
            )
            response.close()
            self._sleep(delay_s)
        raise RuntimeError("Unreachable retry loop in source downloader")

    def _retry_delay_s(self, attempt: int) -> float:
        return min(self.cfg.retry_backoff_s * (2**attempt), _MAX_RETRY_DELAY_S)


def fetch_geojson(
    downloader: HttpDownloader,
    urls: Sequence[str],
    dest: Path,
    *,
    force: bool = False,
) -> tuple[Path, str | None]:
    """Download the first URL that yields a JSON object, trying mirrors in order.

    An existing ``dest`` is reused unless ``force`` is set.
    """
    if dest.exists() and not force:
        _LOGGER.info("Using cached %s", dest)
        return dest, None
    last_error: str | None = None
    for url in urls:
        try:
            body = downloader.fetch(url)
        except NetworkError as exc:
            last_error = str(exc)
            _LOGGER.warning("Mirror failed: %s", exc)
            continue
        if not body.lstrip().startswith(b"{"):
            last_error = f"{url}: invalid payload"
            _LOGGER.warning("Mirror returned a non-JSON payload: %s", url)
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(body)
        _LOGGER.info("Downloaded %s (%d bytes) to %s", url, len(body), dest)
        return dest, url
    raise NetworkError(f"GeoJSON download failed for every mirror. Last error: {last_error or 'unknown'}")


def find_shapefile(extract_dir: Path, marker: str = _SHAPEFILE_MARKER) -> Path | None:
    if not extract_dir.is_dir():
        return None
    for path in sorted(extract_dir.rglob("*.shp")):
        if marker in path.name:
            return path
    return None


def fetch_natural_earth(
    downloader: HttpDownloader,
    urls: Sequence[str],
    data_dir: Path,
    *,
    force: bool = False,
) -> Path:
    """Download and extract a Natural Earth admin-0 archive; return the ``.shp``.

    Mirrors are tried in order; archive and extraction are cached per URL.
    """
    last_error: str | None = None
    for url in urls:
        archive_name = Path(urlsplit(url).path).name or "natural_earth.zip"
        zip_path = data_dir / archive_name
        extract_dir = data_dir / Path(archive_name).stem
        shp_path = None if force else find_shapefile(extract_dir)
        if shp_path is not None:
            _LOGGER.info("Using cached shapefile %s", shp_path)
            return shp_path
        if force or not zip_path.exists():
            try:
                body = downloader.fetch(url)
            except NetworkError as exc:
                last_error = str(exc)
                _LOGGER.warning("Mirror failed: %s", exc)
                continue
            zip_path.parent.mkdir(parents=True, exist_ok=True)
            zip_path.write_bytes(body)
            _LOGGER.info("Downloaded %s (%d bytes)", url, len(body))
        extract_archive(zip_path, extract_dir)
        shp_path = find_shapefile(extract_dir)
        if shp_path is None:
            raise NotFoundError(f"Shapefile .shp not found under {extract_dir}")
        return shp_path
    raise NetworkError(f"Natural Earth download failed for every mirror. Last error: {last_error or 'unknown'}")


def extract_archive(zip_path: Path, extract_dir: Path) -> None:
    extract_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(zip_path) as archive:
            archive.extractall(extract_dir)
    except zipfile.BadZipFile as exc:
        # A truncated archive must not be reused on the next run.
        zip_path.unlink(missing_ok=True)
        raise ValidationError(f"Corrupt archive {zip_path}: {exc}") from exc


def read_shapefile(shp_path: Path) -> dict[str, Any]:
    """Read a shapefile into a GeoJSON FeatureCollection in EPSG:4326."""
    gpd = _require_geopandas()
    frame = gpd.read_file(shp_path)
    if frame.crs is not None and frame.crs.to_epsg() != 4326:
        frame = frame.to_crs(epsg=4326)
    return json.loads(frame.to_json(na="null"))


def read_geojson(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid GeoJSON in {path}: {exc}") from exc


def load_source(
    collection: CollectionConfig,
    downloader: HttpDownloader,
    data_dir: Path,
    *,
    scale: str,
    override_url: str | None = None,
    force: bool = False,
) -> Any:
    """Download (or reuse) the collection's dataset and return its raw collection."""
    urls = collection.source.urls_for(scale, override_url)
    if collection.source.kind == "geojson":
        dest = data_dir / geojson_cache_name(collection.name, scale, override_url)
        path, _ = fetch_geojson(downloader, urls, dest, force=force)
        return read_geojson(path)
    shp_path = fetch_natural_earth(downloader, urls, data_dir, force=force)
    return read_shapefile(shp_path)


def geojson_cache_name(name: str, scale: str, override_url: str | None = None) -> str:
    """Cache file for a dataset; an override URL gets its own file."""
    if not override_url:
        return f"{name}-{scale}.geojson"
    digest = hashlib.sha256(override_url.encode("utf-8")).hexdigest()[:10]
    return f"{name}-{scale}-{digest}.geojson"


def _require_geopandas() -> Any:
    try:
        import geopandas as gpd
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("geopandas is required for shapefile loading") from exc
    return gpd
