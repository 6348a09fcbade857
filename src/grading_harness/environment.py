"""Per-case environment preparation.

The only preparation handled in-process is config-file substitution: a case
may ship a config template per side, which is copied beside the executable
under the configured name before any process starts.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError, ErrorCode
from .models import TestCaseDefinition
from .observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ConfigTemplateInstaller:
    """Copies ``<templates>/<case>/{client,server}/<config_file_name>`` into place.

    Missing templates are skipped; a missing executable directory is an error.
    """

    templates_root: Path
    client_path: Optional[Path]
    server_path: Optional[Path]
    config_file_name: str = "appsettings.json"

    async def prepare(self, case: TestCaseDefinition) -> None:
        for side, executable in (("client", self.client_path), ("server", self.server_path)):
            template = self.templates_root / case.name / side / self.config_file_name
            if executable is None or not template.is_file():
                continue
            target_dir = executable.parent
            if not target_dir.is_dir():
                raise ConfigurationError(
                    f"{side.capitalize()} directory does not exist: {target_dir}",
                    code=ErrorCode.FILE_NOT_FOUND,
                )
            shutil.copyfile(template, target_dir / self.config_file_name)
            logger.info("config_installed", side=side, case=case.name, template=str(template))
