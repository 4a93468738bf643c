"""Change detection for the content passed to the installer Job.

The values and chart content reach the installer through mounted ConfigMaps,
which do not change the Job spec on their own. A digest of their contents is
stamped on the pod template so that any content change produces a new Job.
"""

import hashlib
import logging

from .manifest import ConfigMap, Job, CONFIG_HASH_ANNOTATION

__all__ = [
    "config_digest",
    "stamp_digest",
]

_LOGGER = logging.getLogger(__name__)

DIGEST_PREFIX = "SHA256="


def _update(digest: "hashlib._Hash", payload: bytes) -> None:
    """Write a length prefixed field so bytes can not shift between fields."""
    digest.update(len(payload).to_bytes(8, "big"))
    digest.update(payload)


def config_digest(*config_maps: ConfigMap | None) -> str:
    """Return a digest over every (filename, payload) pair in the ConfigMaps.

    Entries are hashed in sorted filename order so the digest does not depend
    on the order the data was built in. Each filename and payload is length
    prefixed. Missing ConfigMaps are skipped.
    """
    digest = hashlib.sha256()
    for config_map in config_maps:
        if config_map is None:
            continue
        for key in sorted(config_map.data):
            _update(digest, key.encode())
            _update(digest, config_map.data[key].encode())
        for key in sorted(config_map.binary_data):
            _update(digest, key.encode())
            _update(digest, config_map.binary_data[key])
    return f"{DIGEST_PREFIX}{digest.hexdigest().upper()}"


def stamp_digest(job: Job, *config_maps: ConfigMap | None) -> str:
    """Record the digest of the ConfigMaps on the Job pod template."""
    value = config_digest(*config_maps)
    annotations = dict(job.template.annotations or {})
    annotations[CONFIG_HASH_ANNOTATION] = value
    job.template.annotations = annotations
    _LOGGER.debug("Job %s content digest %s", job.resource_id, value)
    return value
