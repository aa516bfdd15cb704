"""Verify-then-commit change of the active storage engine."""

from __future__ import annotations

from adminflow.logging import get_logger, mask_uri_password
from adminflow.service.catalog import check_completeness, ensure_collections
from adminflow.service.engine_config import EngineConfigStore, validate_engine_config
from adminflow.service.errors import ConnectivityError, IncompleteTargetError
from adminflow.service.verifier import ConnectionVerifier
from adminflow.storage.base import StoreFactory
from adminflow.storage.errors import StoreError
from adminflow.storage.models import EngineConfig, SwitchResult

logger = get_logger(__name__)


class EngineSwitcher:
    """Changes the active engine without ever committing an unusable target.

    The config store's lock is held for the whole verify, prepare, re-check
    and save sequence, so concurrent switches are fully serialized.

    Collections created while preparing the target stay in place when the
    switch is later aborted; creation is idempotent and never destroys data.
    """

    def __init__(
        self,
        config_store: EngineConfigStore,
        verifier: ConnectionVerifier,
        store_factory: StoreFactory,
    ) -> None:
        self.config_store = config_store
        self.verifier = verifier
        self.store_factory = store_factory

    def switch_to(self, target: EngineConfig) -> SwitchResult:
        target = validate_engine_config(target)
        with self.config_store.transaction():
            steps = []
            self.verifier.ensure_reachable(target)
            steps.append("verified connection")

            try:
                store = self.store_factory.open(target)
            except StoreError as exc:
                raise ConnectivityError(
                    exc.message,
                    detail=self._detail(target, exc.message),
                ) from exc
            try:
                before = check_completeness(store)
                required = len(before.present_names) + len(before.missing_names)
                steps.append(f"found {len(before.present_names)} of {required} required collections")
                created, create_errors = ensure_collections(store, before.missing_names)
                if created:
                    steps.append(f"created {', '.join(created)}")
                after = check_completeness(store)
            except StoreError as exc:
                raise ConnectivityError(
                    "target became unreachable while preparing collections",
                    detail=self._detail(target, exc.message),
                ) from exc
            finally:
                store.close()

            if not after.complete:
                logger.warning(
                    "engine_switch_incomplete_target",
                    engine=target.engine,
                    missing=sorted(after.missing_names),
                    created=created,
                )
                raise IncompleteTargetError(
                    "target is missing required collections after auto-create",
                    detail={
                        "engine": target.engine,
                        "missing": sorted(after.missing_names),
                        "created": created,
                        "errors": create_errors,
                    },
                )

            saved = self.config_store.save(target)
            steps.append(f"active engine set to {saved.engine}")
        logger.info(
            "engine_switched",
            engine=saved.engine,
            target=mask_uri_password(saved.location),
            created=created,
        )
        return SwitchResult(config=saved, before=before, after=after, created=created, steps=steps)

    @staticmethod
    def _detail(target: EngineConfig, reason: str) -> dict:
        return {
            "engine": target.engine,
            "target": mask_uri_password(target.location),
            "reason": reason,
        }
