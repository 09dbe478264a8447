"""High-level project facade tying configuration, precompiler and logging together."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from prebake import make
from prebake.checksum import Artifact
from prebake.config import ProjectConfig
from prebake.download import Downloader
from prebake.errors import ConfigError
from prebake.observability import StructuredLogger
from prebake.precompile import (
    ChecksumMode,
    PrecompileReport,
    RestoreResult,
    checksum_artifacts,
    precompile_all,
    restore_from_cache,
)
from prebake.precompiler import Precompiler, recovery_action

CompileMode = Literal["make", "native", "precompiled", "ignored"]


@dataclass(slots=True)
class Project:
    config: ProjectConfig
    precompiler: Precompiler | None = None
    downloader: Downloader | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def compile(self, args: Sequence[str] = ()) -> CompileMode:
        """Build the native library, preferring a verified precompiled archive.

        Without a precompiler this is a plain ``make`` run. Forced builds
        (explicitly, or for ``dev`` versions) skip the precompiled path.
        """
        if self.precompiler is None:
            make.run_make(self.config, args)
            return "make"
        if self.config.should_force_build:
            self.precompiler.build_native(args)
            return "native"

        result = self.restore()
        if result.restored:
            return "precompiled"

        self.logger.log(
            operation="compile",
            target=result.target,
            phase=str(result.failure) if result.failure else None,
            message=(
                f"Error happened while installing {self.config.app} from precompiled "
                f"binary: {result.reason}"
            ),
            level="error",
        )
        action = recovery_action(self.precompiler, result.target) if result.target else "compile"
        if action == "ignore":
            self.logger.log(
                operation="compile",
                target=result.target,
                phase="recover",
                message=f"Target {result.target} is unavailable; skipping native build.",
            )
            return "ignored"
        self.logger.log(
            operation="compile",
            target=result.target,
            phase="recover",
            message=f"Attempting to compile {self.config.app} from source...",
        )
        self.precompiler.build_native(args)
        return "native"

    def restore(self) -> RestoreResult:
        return restore_from_cache(
            self.config,
            self._require_precompiler(),
            downloader=self.downloader,
            logger=self.logger,
        )

    def precompile(self, args: Sequence[str] = ()) -> PrecompileReport:
        return precompile_all(self.config, self._require_precompiler(), args, logger=self.logger)

    def checksum(
        self,
        *,
        mode: ChecksumMode,
        ignore_unavailable: bool | None = None,
    ) -> list[Artifact]:
        return checksum_artifacts(
            self.config,
            self._require_precompiler(),
            mode=mode,
            ignore_unavailable=ignore_unavailable,
            downloader=self.downloader,
            logger=self.logger,
        )

    def clean(self) -> bool:
        return make.clean(self.config)

    def _require_precompiler(self) -> Precompiler:
        if self.precompiler is None:
            raise ConfigError(
                "A precompiler is required for this operation.",
                hint="Set `precompiler = \"package.module:attribute\"` in [tool.prebake].",
            )
        return self.precompiler
