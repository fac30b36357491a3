"""Sequence execution state machine.

A run walks the checks of one SequenceDefinition in order and records one
immutable TestResult per check. A check that returns `Suspend` ends the pass
with outcome `wait`; `resume_sequence` continues after it in a new
SequenceResult, and `cancel_sequence` closes it out instead.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

import structlog

from conformance_harness.client import ProtocolClient
from conformance_harness.errors import CheckSignal, InvalidStateError, ProtocolClientError
from conformance_harness.models import (
    CANCEL,
    CANCEL_MESSAGE,
    ERROR,
    FAIL,
    PASS,
    SKIP,
    WAIT,
    RequestResponse,
    RunInstance,
    SequenceResult,
    TestResult,
    new_id,
    utc_now,
)
from conformance_harness.sequences.base import Check, CheckContext, SequenceDefinition, Suspend
from conformance_harness.validation import SchemaValidator

VERSION_SKIP_MESSAGE = "This test does not run with this FHIR version"

_ABORTING_RESULTS = {FAIL, ERROR}


def _logger(logger: Any, definition: type[SequenceDefinition], instance: RunInstance) -> Any:
    base = logger if logger is not None else structlog.get_logger("conformance.engine")
    return base.bind(sequence=definition.sequence_name, instance_id=instance.id)


def derive_outcome(test_results: Iterable[TestResult]) -> str:
    results = list(test_results)
    if any(tr.result == ERROR for tr in results):
        return ERROR
    if any(tr.required and tr.result == FAIL for tr in results):
        return FAIL
    if not any(tr.required and tr.result == PASS for tr in results):
        return SKIP
    return PASS


def _outcome_message(outcome: str, test_results: Sequence[TestResult]) -> str:
    for tr in test_results:
        if outcome == ERROR and tr.result == ERROR:
            return tr.message
        if outcome == FAIL and tr.required and tr.result == FAIL:
            return tr.message
    return ""


def _new_test_result(
    definition: type[SequenceDefinition],
    c: Check,
    index: int,
    sequence_result_id: str,
    result: str,
    message: str = "",
    **extra: Any,
) -> TestResult:
    return TestResult(
        id=new_id(),
        check_id=definition.check_key(c),
        name=c.name,
        result=result,
        message=message,
        required=c.required,
        url=c.url,
        description=c.description,
        ref=c.ref,
        index=index,
        sequence_result_id=sequence_result_id,
        **extra,
    )


def _hard_stop_message(definition: type[SequenceDefinition], c: Check) -> str:
    return f"Skipped because check {definition.check_key(c)} ({c.name}) did not pass."


def _record_input_params(
    definition: type[SequenceDefinition], instance: RunInstance
) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for name in definition.required_variables():
        value = instance.variables.get(name)
        out[name] = value if value else "none"
    return out


def _run_check(
    seq: SequenceDefinition,
    c: Check,
    ctx: CheckContext,
    log: Any,
) -> tuple[Dict[str, Any], Optional[Suspend]]:
    fields: Dict[str, Any] = {"result": PASS, "message": "", "details": {}}
    suspend: Optional[Suspend] = None
    try:
        returned = getattr(seq, c.method_name)(ctx)
        if isinstance(returned, Suspend):
            suspend = returned
    except CheckSignal as e:
        e.update_result(fields)
    except ProtocolClientError as e:
        fields["result"] = FAIL
        fields["message"] = str(e)
    except Exception as e:
        fields["result"] = ERROR
        fields["message"] = f"Fatal Error: {e}"
        log.exception("check.error", check=c.check_id, error=str(e))
    return fields, suspend


def run_sequence(
    definition: type[SequenceDefinition],
    instance: RunInstance,
    client: ProtocolClient,
    *,
    resume_from: int = 0,
    test_case_id: str = "",
    test_set_id: str = "",
    validator: Optional[SchemaValidator] = None,
    callback_params: Optional[Mapping[str, Any]] = None,
    prior_results: Sequence[TestResult] = (),
    resumed_from: Optional[str] = None,
    input_params: Optional[Mapping[str, str]] = None,
    pending_variables: Optional[Mapping[str, Optional[str]]] = None,
    logger: Any = None,
    clock: Callable[[], datetime] = utc_now,
) -> SequenceResult:
    """Execute `definition` against `instance`, starting at check `resume_from`.

    The returned SequenceResult has already been appended to the instance.
    Only the variables named in `defines` are committed, and only when the
    sequence completes with an outcome other than `error`. A waiting result
    keeps its staged writes in `pending_variables` for the resumed pass.
    """
    log = _logger(logger, definition, instance)
    checks = definition.checks
    if resume_from < 0 or resume_from > len(checks):
        raise ValueError(f"resume_from out of range: {resume_from}")
    if len(prior_results) != resume_from:
        raise ValueError("prior_results must cover every check before resume_from")

    sr = SequenceResult(
        id=new_id(),
        name=definition.sequence_name,
        test_case_id=test_case_id,
        test_set_id=test_set_id,
        instance_id=instance.id,
        required=not definition.optional,
        created_at=clock(),
        resumed_from=resumed_from,
    )
    sr.input_params = (
        dict(input_params) if input_params is not None else _record_input_params(definition, instance)
    )
    sr.test_results = [replace(tr, id=new_id(), sequence_result_id=sr.id) for tr in prior_results]
    sr.result = "running"
    log.info("sequence.started", sequence_result_id=sr.id, resume_from=resume_from)

    staged = instance.variables.stage(pending_variables)
    ctx = CheckContext(
        instance=instance,
        variables=staged,
        client=client,
        validator=validator,
        logger=log,
        callback_params=dict(callback_params or {}),
    )
    token = instance.variables.get("token")
    if token:
        client.set_bearer_token(token)

    skip_all: Optional[str] = None
    fatal: Optional[str] = None
    try:
        if not definition.supports_version(instance.fhir_version):
            skip_all = VERSION_SKIP_MESSAGE
        elif resume_from == 0:
            skip_all = definition.precondition(instance)
    except Exception as e:
        fatal = f"Fatal Error: {e}"
        log.exception("sequence.precondition_error", error=str(e))

    aborted: Optional[Check] = None
    for tr in sr.test_results:
        c = checks[tr.index]
        if c.hard_stop and tr.result in _ABORTING_RESULTS:
            aborted = c

    seq = definition()
    suspended: Optional[Suspend] = None
    for index in range(resume_from, len(checks)):
        c = checks[index]
        if fatal is not None:
            sr.test_results.append(_new_test_result(definition, c, index, sr.id, ERROR, fatal))
            continue
        if skip_all is not None:
            sr.test_results.append(_new_test_result(definition, c, index, sr.id, SKIP, skip_all))
            continue
        if not definition.check_supports_version(c, instance.fhir_version):
            sr.test_results.append(
                _new_test_result(definition, c, index, sr.id, SKIP, VERSION_SKIP_MESSAGE)
            )
            continue
        if aborted is not None:
            sr.test_results.append(
                _new_test_result(
                    definition, c, index, sr.id, SKIP, _hard_stop_message(definition, aborted)
                )
            )
            continue

        ctx.reset_messages()
        captured: list[RequestResponse] = list(getattr(client, "requests", []))
        log.debug("check.started", check=c.check_id)
        fields, suspend = _run_check(seq, c, ctx, log)
        exchanges = tuple(list(getattr(client, "requests", []))[len(captured):])

        extra: Dict[str, Any] = {
            "details": fields.get("details") or {},
            "warnings": tuple(ctx.warnings),
            "information": tuple(ctx.information),
            "request_responses": exchanges,
        }
        result = fields["result"]
        if suspend is not None and result == PASS:
            result = WAIT
            extra["wait_at_endpoint"] = suspend.endpoint
            extra["redirect_to_url"] = suspend.redirect_url

        sr.test_results.append(
            _new_test_result(definition, c, index, sr.id, result, fields["message"], **extra)
        )
        log.debug("check.finished", check=c.check_id, result=result)

        if result == WAIT:
            suspended = suspend
            break
        if c.hard_stop and result in _ABORTING_RESULTS:
            aborted = c

    sr.update_result_counts()
    if suspended is not None:
        sr.result = WAIT
        sr.wait_at_endpoint = suspended.endpoint
        sr.redirect_to_url = suspended.redirect_url
        log.info(
            "sequence.waiting",
            sequence_result_id=sr.id,
            endpoint=suspended.endpoint,
            redirect=bool(suspended.redirect_url),
        )
    else:
        sr.result = derive_outcome(sr.test_results)
        sr.message = _outcome_message(sr.result, sr.test_results)

    if sr.result == ERROR:
        staged.discard()
    else:
        if sr.result == WAIT:
            sr.pending_variables = staged.changes()
        else:
            before = {name: instance.variables.get(name) for name in definition.defines}
            staged.commit(definition.defines)
            for name in definition.defines:
                sr.output_results[name] = {
                    "original": before[name],
                    "updated": instance.variables.get(name),
                }
        for ref in ctx.resource_references:
            instance.add_resource_reference(ref.resource_type, ref.resource_id, profile=ref.profile)

    instance.add_sequence_result(sr)
    log.info(
        "sequence.finished",
        sequence_result_id=sr.id,
        result=sr.result,
        required_passed=sr.required_passed,
        required_total=sr.required_total,
    )
    return sr


def resume_sequence(
    definition: type[SequenceDefinition],
    instance: RunInstance,
    waiting: SequenceResult,
    client: ProtocolClient,
    callback_params: Optional[Mapping[str, Any]] = None,
    *,
    endpoint: Optional[str] = None,
    fail_message: Optional[str] = None,
    inbound_request: Optional[RequestResponse] = None,
    validator: Optional[SchemaValidator] = None,
    logger: Any = None,
    clock: Callable[[], datetime] = utc_now,
) -> SequenceResult:
    """Continue a waiting sequence in a new SequenceResult.

    The waiting check is completed as `pass`, or as `fail` when
    `fail_message` is given, and execution resumes with the next check.
    The waiting result itself is left untouched.
    """
    if waiting.result != WAIT:
        raise InvalidStateError(f"sequence result {waiting.id} is not waiting (result={waiting.result})")
    if waiting.name != definition.sequence_name:
        raise InvalidStateError(
            f"sequence result {waiting.id} belongs to {waiting.name}, not {definition.sequence_name}"
        )
    if endpoint is not None and endpoint != waiting.wait_at_endpoint:
        raise InvalidStateError(
            f"sequence result {waiting.id} waits at {waiting.wait_at_endpoint!r}, not {endpoint!r}"
        )
    latest = instance.latest_result(waiting.name)
    if latest is not None and latest.id != waiting.id:
        raise InvalidStateError(f"sequence result {waiting.id} has been superseded by {latest.id}")

    wait_tr = waiting.waiting_test_result()
    if wait_tr is None:
        raise InvalidStateError(f"sequence result {waiting.id} has no waiting check")

    exchanges = tuple(wait_tr.request_responses)
    if inbound_request is not None:
        exchanges = exchanges + (inbound_request,)
    completed = replace(
        wait_tr,
        result=FAIL if fail_message else PASS,
        message=fail_message or "",
        request_responses=exchanges,
    )
    prior = [tr for tr in waiting.test_results if tr.index < wait_tr.index] + [completed]

    _logger(logger, definition, instance).info(
        "sequence.resumed", waiting_id=waiting.id, resume_from=wait_tr.index + 1
    )
    return run_sequence(
        definition,
        instance,
        client,
        resume_from=wait_tr.index + 1,
        test_case_id=waiting.test_case_id,
        test_set_id=waiting.test_set_id,
        validator=validator,
        callback_params=callback_params,
        prior_results=prior,
        resumed_from=waiting.id,
        input_params=waiting.input_params,
        pending_variables=waiting.pending_variables,
        logger=logger,
        clock=clock,
    )


def cancel_sequence(
    definition: type[SequenceDefinition],
    result: SequenceResult,
    *,
    logger: Any = None,
) -> SequenceResult:
    """Move a waiting SequenceResult to `cancel`.

    The waiting check and every check that never ran are recorded as
    cancelled. Other results of the instance are not touched.
    """
    if result.result != WAIT:
        raise InvalidStateError(f"only waiting sequences can be cancelled (result={result.result})")

    wait_tr = result.waiting_test_result()
    kept = [tr for tr in result.test_results if tr is not wait_tr]
    if wait_tr is not None:
        kept.append(replace(wait_tr, result=CANCEL, message=CANCEL_MESSAGE))

    ran = {tr.index for tr in kept}
    for index, c in enumerate(definition.checks):
        if index in ran:
            continue
        kept.append(_new_test_result(definition, c, index, result.id, CANCEL, CANCEL_MESSAGE))

    result.test_results = sorted(kept, key=lambda tr: tr.index)
    result.result = CANCEL
    result.message = CANCEL_MESSAGE
    result.update_result_counts()

    base = logger if logger is not None else structlog.get_logger("conformance.engine")
    base.info("sequence.cancelled", sequence=result.name, sequence_result_id=result.id)
    return result


def skip_sequence(
    definition: type[SequenceDefinition],
    instance: RunInstance,
    message: str,
    *,
    test_case_id: str = "",
    test_set_id: str = "",
    logger: Any = None,
    clock: Callable[[], datetime] = utc_now,
) -> SequenceResult:
    """Record a run that never started: every check is `skip` with `message`."""
    sr = SequenceResult(
        id=new_id(),
        name=definition.sequence_name,
        test_case_id=test_case_id,
        test_set_id=test_set_id,
        instance_id=instance.id,
        required=not definition.optional,
        created_at=clock(),
        input_params=_record_input_params(definition, instance),
    )
    sr.test_results = [
        _new_test_result(definition, c, index, sr.id, SKIP, message)
        for index, c in enumerate(definition.checks)
    ]
    sr.result = SKIP
    sr.message = message
    sr.update_result_counts()
    instance.add_sequence_result(sr)
    _logger(logger, definition, instance).info(
        "test_case.blocked", test_case_id=test_case_id, message=message
    )
    return sr
