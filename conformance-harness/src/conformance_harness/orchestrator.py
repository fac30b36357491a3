from __future__ import annotations

import contextlib
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence

import structlog

from conformance_harness.client import HttpProtocolClient, ProtocolClient
from conformance_harness.config import HarnessConfig
from conformance_harness.dependencies import (
    dependency_skip_message,
    missing_requirements,
    resolve_dependencies,
)
from conformance_harness.engine import cancel_sequence, resume_sequence, run_sequence, skip_sequence
from conformance_harness.errors import (
    ConfigurationError,
    InvalidStateError,
    RunInProgressError,
    UnknownInstanceError,
)
from conformance_harness.graph import TestCase, TestGroup, TestSet
from conformance_harness.models import (
    ERROR,
    FAIL,
    SKIP,
    WAIT,
    ClientConfig,
    RequestResponse,
    RunInstance,
    SequenceResult,
    utc_now,
)
from conformance_harness.persistence import RunStore
from conformance_harness.reporting.aggregate import aggregate, latest_results_by_case
from conformance_harness.sequences.base import SequenceDefinition
from conformance_harness.validation import SchemaValidator

ClientFactory = Callable[[RunInstance], ProtocolClient]


def http_client_factory(config: HarnessConfig, logger: Any = None) -> ClientFactory:
    def factory(instance: RunInstance) -> ProtocolClient:
        return HttpProtocolClient(
            instance.url,
            timeout_s=config.request_timeout_s,
            verify=config.verify_tls,
            max_pages=config.max_pages,
            logger=logger,
        )

    return factory


@dataclass(frozen=True)
class RunOutcome:
    instance_id: str
    results: Sequence[SequenceResult] = field(default_factory=tuple)
    waiting: Optional[SequenceResult] = None
    remaining: Sequence[str] = field(default_factory=tuple)

    @property
    def redirect_to_url(self) -> Optional[str]:
        return self.waiting.redirect_to_url if self.waiting is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "results": [{"test_case_id": r.test_case_id, "result": r.result} for r in self.results],
            "waiting": self.waiting.id if self.waiting is not None else None,
            "redirect_to_url": self.redirect_to_url,
            "remaining": list(self.remaining),
        }


class Orchestrator:
    """Drives test cases of one TestSet against run instances.

    At most one execution per run instance is in flight; a second caller gets
    RunInProgressError instead of blocking.
    """

    def __init__(
        self,
        test_set: TestSet,
        store: RunStore,
        client_factory: ClientFactory,
        *,
        validator: Optional[SchemaValidator] = None,
        logger: Any = None,
        clock: Callable[[], datetime] = utc_now,
        disable_tls_tests: bool = False,
    ) -> None:
        self.test_set = test_set
        self.store = store
        self.client_factory = client_factory
        self.validator = validator
        self.clock = clock
        self.disable_tls_tests = disable_tls_tests
        self._log = (logger if logger is not None else structlog.get_logger("conformance")).bind(
            test_set=test_set.id
        )
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextlib.contextmanager
    def _exclusive(self, instance_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(instance_id, threading.Lock())
        if not lock.acquire(blocking=False):
            raise RunInProgressError(f"run instance {instance_id} is already executing")
        try:
            yield
        finally:
            lock.release()

    def create_instance(
        self,
        url: str,
        *,
        fhir_version: str = "r4",
        client: Optional[ClientConfig] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> RunInstance:
        seeded = dict(variables or {})
        if self.disable_tls_tests:
            seeded.setdefault("disable_tls_tests", "true")
        instance = RunInstance.create(url, fhir_version=fhir_version, client=client, variables=seeded)
        self.store.save(instance)
        self._log.info("instance.created", instance_id=instance.id, url=instance.url)
        return instance

    def load(self, instance_id: str) -> RunInstance:
        instance = self.store.load(instance_id)
        if instance is None:
            raise UnknownInstanceError(f"unknown run instance: {instance_id}")
        return instance

    def update_variables(self, instance_id: str, values: Mapping[str, Any]) -> RunInstance:
        """Apply user-supplied values; locked variables raise LockedVariableError."""
        with self._exclusive(instance_id):
            instance = self.load(instance_id)
            for name, value in values.items():
                instance.variables.set_from_user(name, value)
            self.store.save(instance)
            return instance

    def _test_case(self, test_case_id: str) -> TestCase:
        tc = self.test_set.test_case_by_id(test_case_id)
        if tc is None:
            raise ConfigurationError(f"unknown test case: {test_case_id}")
        return tc

    def _group(self, group_id: str) -> TestGroup:
        group = self.test_set.group_by_id(group_id)
        if group is None:
            raise ConfigurationError(f"unknown test group: {group_id}")
        return group

    def _definition_for(self, result: SequenceResult) -> type[SequenceDefinition]:
        tc = self.test_set.test_case_by_id(result.test_case_id)
        if tc is not None:
            return tc.sequence
        for definition in self.test_set.sequences():
            if definition.sequence_name == result.name:
                return definition
        raise ConfigurationError(f"sequence {result.name} is not part of test set {self.test_set.id}")

    def _release_group_locks(self, instance: RunInstance, test_case_id: str) -> None:
        group = self.test_set.group_for(test_case_id)
        if group is not None and group.lock_variables:
            instance.variables.unlock(group.lock_variables)

    def _run_queue(
        self,
        instance: RunInstance,
        queue: list[TestCase],
        *,
        stop_on_failure: bool = False,
        results: Optional[list[SequenceResult]] = None,
    ) -> RunOutcome:
        results = list(results or [])
        if not queue:
            self.store.save(instance)
            return RunOutcome(instance_id=instance.id, results=tuple(results))

        first = queue[0]
        group = self.test_set.group_for(first)
        if group is not None and group.lock_variables:
            instance.variables.lock(group.lock_variables)

        client = self.client_factory(instance)
        try:
            while queue:
                tc = queue.pop(0)
                for name, value in tc.variable_defaults.items():
                    if not instance.variables.is_defined(name):
                        instance.variables.set(name, value)

                report = resolve_dependencies(self.test_set, instance.variables, [tc])
                if report.blocked:
                    message = dependency_skip_message(
                        missing_requirements(tc.sequence, instance.variables, self.test_set)
                    )
                    sr = skip_sequence(
                        tc.sequence,
                        instance,
                        message,
                        test_case_id=tc.id,
                        test_set_id=self.test_set.id,
                        logger=self._log,
                        clock=self.clock,
                    )
                else:
                    sr = run_sequence(
                        tc.sequence,
                        instance,
                        client,
                        test_case_id=tc.id,
                        test_set_id=self.test_set.id,
                        validator=self.validator,
                        logger=self._log,
                        clock=self.clock,
                    )
                results.append(sr)

                if sr.result == WAIT:
                    sr.next_test_cases = [t.id for t in queue]
                    sr.stop_on_failure = stop_on_failure
                    self.store.save(instance)
                    return RunOutcome(
                        instance_id=instance.id,
                        results=tuple(results),
                        waiting=sr,
                        remaining=tuple(sr.next_test_cases),
                    )

                self.store.save(instance)
                if stop_on_failure and sr.result in {FAIL, ERROR}:
                    break
        finally:
            close = getattr(client, "close", None)
            if callable(close):
                close()

        if group is not None and group.lock_variables:
            instance.variables.unlock(group.lock_variables)
        self.store.save(instance)
        return RunOutcome(
            instance_id=instance.id,
            results=tuple(results),
            remaining=tuple(t.id for t in queue),
        )

    def run_test_cases(self, instance_id: str, test_case_ids: Sequence[str]) -> RunOutcome:
        """Run the given cases in order, stopping early only on `wait`."""
        cases = [self._test_case(tid) for tid in test_case_ids]
        with self._exclusive(instance_id):
            instance = self.load(instance_id)
            waiting = instance.waiting_on_sequence()
            if waiting is not None:
                raise InvalidStateError(
                    f"run instance {instance_id} is waiting on {waiting.name}; resume or cancel it first"
                )
            return self._run_queue(instance, cases)

    def run_group(self, instance_id: str, group_id: str, *, skipped_only: bool = False) -> RunOutcome:
        """Run a whole group.

        Unless the group is `run_all`, the run stops after the first failing or
        erroring case. With `skipped_only`, only cases whose latest result is
        `skip` are run again, which the group must allow via `run_skipped`.
        """
        group = self._group(group_id)
        if skipped_only and not group.run_skipped:
            raise InvalidStateError(f"group {group_id} does not allow re-running skipped cases")

        with self._exclusive(instance_id):
            instance = self.load(instance_id)
            waiting = instance.waiting_on_sequence()
            if waiting is not None:
                raise InvalidStateError(
                    f"run instance {instance_id} is waiting on {waiting.name}; resume or cancel it first"
                )
            cases = list(group.test_cases)
            if skipped_only:
                latest = latest_results_by_case(instance)
                cases = [tc for tc in cases if tc.id in latest and latest[tc.id].result == SKIP]
            return self._run_queue(instance, cases, stop_on_failure=not group.run_all)

    def resume(
        self,
        instance_id: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        fail_message: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> RunOutcome:
        """Deliver a callback to the waiting sequence and continue its queue.

        The queue keeps the stop-on-failure mode it was started with.
        """
        with self._exclusive(instance_id):
            instance = self.load(instance_id)
            waiting = instance.waiting_on_sequence()
            if waiting is None:
                raise InvalidStateError(f"run instance {instance_id} is not waiting on any sequence")

            inbound = RequestResponse(
                method="GET",
                url=callback_url or endpoint,
                direction="inbound",
                request_body=json.dumps(dict(params or {}), sort_keys=True),
                timestamp=self.clock().isoformat(),
            )
            client = self.client_factory(instance)
            try:
                sr = resume_sequence(
                    self._definition_for(waiting),
                    instance,
                    waiting,
                    client,
                    params,
                    endpoint=endpoint,
                    fail_message=fail_message,
                    inbound_request=inbound,
                    validator=self.validator,
                    logger=self._log,
                    clock=self.clock,
                )
            finally:
                close = getattr(client, "close", None)
                if callable(close):
                    close()

            if sr.result == WAIT:
                sr.next_test_cases = list(waiting.next_test_cases)
                sr.stop_on_failure = waiting.stop_on_failure
                self.store.save(instance)
                return RunOutcome(
                    instance_id=instance.id,
                    results=(sr,),
                    waiting=sr,
                    remaining=tuple(sr.next_test_cases),
                )

            if waiting.stop_on_failure and sr.result in {FAIL, ERROR}:
                self._release_group_locks(instance, waiting.test_case_id)
                self.store.save(instance)
                return RunOutcome(
                    instance_id=instance.id,
                    results=(sr,),
                    remaining=tuple(waiting.next_test_cases),
                )

            queue = [
                tc
                for tc in (self.test_set.test_case_by_id(tid) for tid in waiting.next_test_cases)
                if tc is not None
            ]
            if not queue:
                self._release_group_locks(instance, waiting.test_case_id)
            return self._run_queue(
                instance, queue, stop_on_failure=waiting.stop_on_failure, results=[sr]
            )

    def cancel(self, instance_id: str) -> SequenceResult:
        with self._exclusive(instance_id):
            instance = self.load(instance_id)
            waiting = instance.waiting_on_sequence()
            if waiting is None:
                raise InvalidStateError(f"run instance {instance_id} is not waiting on any sequence")
            result = cancel_sequence(self._definition_for(waiting), waiting, logger=self._log)
            self._release_group_locks(instance, waiting.test_case_id)
            self.store.save(instance)
            return result

    def report(self, instance_id: str) -> Dict[str, Any]:
        return aggregate(self.load(instance_id), self.test_set)
