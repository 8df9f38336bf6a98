"""
Cleanup of locally deployed builds.

Every successful local deploy is registered here, per repository and ref.
When a branch or tag is deleted upstream, cleanup() removes the deployed
directory and marks the builds that produced it as cleaned.

Data is stored as JSON in <working_directory>/cleanup/<repo>.json.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from starlette.concurrency import run_in_threadpool

from .models import RefMode
from .status import StatusStore

logger = logging.getLogger(__name__)


class CleanupManager:
    def __init__(self, cleanup_directory: Path, status: StatusStore):
        self.cleanup_directory = Path(cleanup_directory)
        self.status = status

    def _data_file(self, repo_name: str) -> Path:
        return self.cleanup_directory / f"{repo_name}.json"

    def get_cleanup_data(self, repo_name: str) -> List[Dict[str, Any]]:
        path = self._data_file(repo_name)
        if not path.is_file():
            return []
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning(
                f"ignoring invalid cleanup data in {path}",
                extra={"props": {"module": f"cleanup/{repo_name}"}},
            )
            return []

    def _set_cleanup_data(self, repo_name: str, data: List[Dict[str, Any]]) -> None:
        self.cleanup_directory.mkdir(parents=True, exist_ok=True)
        self._data_file(repo_name).write_text(json.dumps(data), encoding="utf-8")

    @staticmethod
    def _find(data: List[Dict[str, Any]], ref_mode: RefMode, ref: str) -> Optional[Dict[str, Any]]:
        for item in data:
            if item["ref_mode"] == ref_mode.value and item["ref"] == ref:
                return item
        return None

    async def _remove(self, repo_name: str, item: Dict[str, Any]) -> None:
        target = Path(item["destination"]) / item["path_in_destination"]
        logger.debug(
            f"removing local directory {target}",
            extra={"props": {"module": f"cleanup/{repo_name}"}},
        )
        await run_in_threadpool(shutil.rmtree, target, ignore_errors=True)
        for build_id in item["build_ids"]:
            self.status.mark_cleaned(build_id)

    async def register_for_cleanup(
        self,
        repo_name: str,
        ref_mode: RefMode,
        ref: str,
        build_id: int,
        destination: str,
        path_in_destination: str,
    ) -> None:
        """
        Record that a build of a ref was deployed to destination/path.

        When the ref was previously deployed to another location, that
        location is removed first.
        """
        data = self.get_cleanup_data(repo_name)
        item = self._find(data, ref_mode, ref)

        if item and (item["destination"], item["path_in_destination"]) != (destination, path_in_destination):
            await self._remove(repo_name, item)
            data.remove(item)
            item = None

        if item is None:
            item = {
                "ref_mode": ref_mode.value,
                "ref": ref,
                "destination": destination,
                "path_in_destination": path_in_destination,
                "build_ids": [],
            }
            data.append(item)

        item["build_ids"].append(build_id)
        self._set_cleanup_data(repo_name, data)

    async def cleanup(self, repo_name: str, ref_mode: RefMode, ref: str) -> bool:
        """
        Remove the deployed output of a ref.

        Returns:
            False when nothing was registered for the ref
        """
        data = self.get_cleanup_data(repo_name)
        item = self._find(data, ref_mode, ref)
        if item is None:
            logger.debug(
                f"found no cleanup info for {ref_mode.value} {ref}",
                extra={"props": {"module": f"cleanup/{repo_name}"}},
            )
            return False

        await self._remove(repo_name, item)
        logger.info(
            f"removed build for {ref_mode.value} {ref} on {repo_name}",
            extra={"props": {"module": f"cleanup/{repo_name}"}},
        )
        data.remove(item)
        self._set_cleanup_data(repo_name, data)
        return True
