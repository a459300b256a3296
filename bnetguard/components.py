from __future__ import annotations

from dataclasses import dataclass

from bnetguard.catalog import load_catalog
from bnetguard.controller import ProcessController
from bnetguard.detector import ProcessDetector, build_listers
from bnetguard.models import AppConfig, ApplicationCatalog
from bnetguard.network import NetworkBlocker
from bnetguard.paths import ConfigPathResolver
from bnetguard.runner import CommandRunner, SubprocessRunner


@dataclass(frozen=True)
class Components:
    detector: ProcessDetector
    controller: ProcessController
    blocker: NetworkBlocker
    resolver: ConfigPathResolver


def build_components(
    config: AppConfig,
    runner: CommandRunner | None = None,
    catalog: ApplicationCatalog | None = None,
    dry_run: bool = False,
) -> Components:
    runner = runner or SubprocessRunner()
    catalog = catalog or load_catalog(config.catalog_path)

    detector = ProcessDetector(
        platform=config.platform,
        catalog=catalog,
        runner=runner,
        listers=build_listers(config.platform, config.process_lister),
        cache_expiry_ms=config.cache_expiry_ms,
    )
    controller = ProcessController(
        detector=detector,
        runner=runner,
        grace_period_ms=config.grace_period_ms,
        dry_run=dry_run,
    )
    blocker = NetworkBlocker(
        platform=config.platform,
        catalog=catalog,
        runner=runner,
        hosts_path=config.hosts_path,
        loopback_address=config.loopback_address,
    )
    resolver = ConfigPathResolver(platform=config.platform, catalog=catalog, runner=runner)
    return Components(detector=detector, controller=controller, blocker=blocker, resolver=resolver)
