"""Unit tests for message envelopes, builders and the wire codec."""

from __future__ import annotations

import json

import pytest

from taskwire.core.envelope import (
    Leg,
    MessageEnvelope,
    RequestLegBuilder,
    ResponseLegBuilder,
    decode,
    encode,
    new_correlation_id,
    to_document,
)
from taskwire.core.errors import EnvelopeValidationError
from taskwire.core.status import TaskStatus


def _request(**inputs: object) -> MessageEnvelope:
    return (
        RequestLegBuilder("orders", "charge-card", 7, correlation_id="c-1")
        .inputs(inputs)
        .require("receipt_id")
        .build()
    )


class TestRequestLeg:
    def test_builder_defaults(self) -> None:
        env = _request(amount=120)
        assert env.leg is Leg.REQUEST
        assert env.task_status is TaskStatus.SCHEDULED
        assert env.worker_name is None
        assert env.required_output_parameters == ("receipt_id",)
        assert env.input_parameters == {"amount": 120}
        assert env.output_parameters == {}

    def test_builder_generates_correlation_id(self) -> None:
        a = RequestLegBuilder("wf", "t", 1).build()
        b = RequestLegBuilder("wf", "t", 1).build()
        assert a.correlation_id and b.correlation_id
        assert a.correlation_id != b.correlation_id

    def test_new_correlation_id_is_opaque_hex(self) -> None:
        cid = new_correlation_id()
        assert len(cid) == 32
        int(cid, 16)

    def test_require_deduplicates(self) -> None:
        env = RequestLegBuilder("wf", "t", 1).require("a", "b", "a").build()
        assert env.required_output_parameters == ("a", "b")

    def test_request_cannot_carry_outputs(self) -> None:
        with pytest.raises(EnvelopeValidationError):
            MessageEnvelope("c", "wf", 1, "t", output_parameters={"x": 1})

    def test_request_must_be_scheduled(self) -> None:
        with pytest.raises(EnvelopeValidationError, match="SCHEDULED"):
            MessageEnvelope("c", "wf", 1, "t", task_status=TaskStatus.COMPLETED)

    def test_routing_key(self) -> None:
        assert _request().routing_key == "orders:c-1"


class TestResponseLeg:
    def test_reply_to_copies_identity(self) -> None:
        req = _request()
        reply = (
            ResponseLegBuilder.reply_to(req, worker_name="billing-1")
            .status(TaskStatus.COMPLETED)
            .outputs(receipt_id="r-1")
            .build()
        )
        assert reply.leg is Leg.RESPONSE
        assert reply.correlation_id == req.correlation_id
        assert reply.task_id == req.task_id
        assert reply.required_output_parameters == ("receipt_id",)
        assert reply.output_parameters == {"receipt_id": "r-1"}
        assert reply.input_parameters == {}

    def test_status_is_mandatory(self) -> None:
        builder = ResponseLegBuilder.reply_to(_request(), worker_name="w")
        with pytest.raises(EnvelopeValidationError, match="status"):
            builder.build()

    def test_response_cannot_report_scheduled(self) -> None:
        with pytest.raises(EnvelopeValidationError):
            MessageEnvelope("c", "wf", 1, "t", task_status=TaskStatus.SCHEDULED, worker_name="w")

    def test_reply_to_rejects_response(self) -> None:
        reply = (
            ResponseLegBuilder.reply_to(_request(), "w").status(TaskStatus.IN_PROGRESS).build()
        )
        with pytest.raises(EnvelopeValidationError):
            ResponseLegBuilder.reply_to(reply, "w2")

    def test_blank_worker_name_rejected(self) -> None:
        with pytest.raises(EnvelopeValidationError):
            MessageEnvelope("c", "wf", 1, "t", task_status=TaskStatus.FAILED, worker_name="  ")


class TestValidation:
    @pytest.mark.parametrize("field", ["correlation_id", "workflow_definition_name"])
    def test_blank_identity_fields(self, field: str) -> None:
        kwargs = {
            "correlation_id": "c",
            "workflow_definition_name": "wf",
            "task_id": 1,
            "task_definition_name": "t",
        }
        kwargs[field] = ""
        with pytest.raises(EnvelopeValidationError):
            MessageEnvelope(**kwargs)  # type: ignore[arg-type]

    @pytest.mark.parametrize("task_id", [-1, True, "3", 1.5])
    def test_bad_task_id(self, task_id: object) -> None:
        with pytest.raises(EnvelopeValidationError):
            MessageEnvelope("c", "wf", task_id, "t")  # type: ignore[arg-type]

    def test_status_coerced_from_string(self) -> None:
        env = MessageEnvelope("c", "wf", 1, "t", task_status="FAILED", worker_name="w")  # type: ignore[arg-type]
        assert env.task_status is TaskStatus.FAILED

    def test_unknown_status(self) -> None:
        with pytest.raises(EnvelopeValidationError, match="Unknown task status"):
            MessageEnvelope("c", "wf", 1, "t", task_status="DONE", worker_name="w")  # type: ignore[arg-type]

    def test_duplicate_required_names(self) -> None:
        with pytest.raises(EnvelopeValidationError, match="duplicates"):
            MessageEnvelope("c", "wf", 1, "t", required_output_parameters=("a", "a"))

    def test_non_json_parameter_value(self) -> None:
        with pytest.raises(EnvelopeValidationError, match="JSON"):
            RequestLegBuilder("wf", "t", 1).inputs(when=object()).build()

    def test_nested_json_values_accepted(self) -> None:
        env = _request(items=[{"sku": "A", "qty": 2}], meta={"tags": ["x"], "note": None})
        assert env.input_parameters["items"][0]["qty"] == 2
        assert env.input_parameters["meta"]["note"] is None


class TestImmutability:
    def test_fields_are_frozen(self) -> None:
        env = _request()
        with pytest.raises(AttributeError):
            env.task_id = 9  # type: ignore[misc]

    def test_parameters_are_read_only(self) -> None:
        env = _request(items=[1, 2])
        with pytest.raises(TypeError):
            env.input_parameters["amount"] = 1  # type: ignore[index]
        assert env.input_parameters["items"] == (1, 2)

    def test_builder_input_is_copied(self) -> None:
        source = {"items": [1]}
        env = RequestLegBuilder("wf", "t", 1).inputs(source).build()
        source["items"].append(2)
        assert env.input_parameters["items"] == (1,)


class TestWireCodec:
    def test_document_uses_wire_keys(self) -> None:
        doc = to_document(_request(amount=5))
        assert doc == {
            "correlationId": "c-1",
            "workflowDefName": "orders",
            "inputParameters": {"amount": 5},
            "taskId": 7,
            "taskDefName": "charge-card",
            "requiredOutputParameters": ["receipt_id"],
            "outputParameters": {},
            "taskStatus": "SCHEDULED",
            "workerName": None,
        }

    def test_encode_decode_preserves_envelope(self) -> None:
        env = _request(items=[{"a": [1, 2]}])
        assert decode(encode(env)) == env

    def test_decode_accepts_mapping_and_snake_case(self) -> None:
        env = decode(
            {
                "correlation_id": "c",
                "workflow_definition_name": "wf",
                "task_id": 3,
                "task_definition_name": "t",
                "task_status": "COMPLETED",
                "worker_name": "w",
                "output_parameters": {"x": 1},
            }
        )
        assert env.leg is Leg.RESPONSE
        assert env.output_parameters == {"x": 1}

    def test_decode_ignores_unknown_fields(self) -> None:
        doc = to_document(_request())
        doc["traceId"] = "abc"
        assert decode(json.dumps(doc)).correlation_id == "c-1"

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "{}",
            json.dumps({"correlationId": "c", "workflowDefName": "wf", "taskId": 1}),
            json.dumps(
                {
                    "correlationId": "c",
                    "workflowDefName": "wf",
                    "taskId": 1,
                    "taskDefName": "t",
                    "taskStatus": "BOGUS",
                }
            ),
        ],
    )
    def test_decode_rejects_malformed(self, raw: str) -> None:
        with pytest.raises(EnvelopeValidationError):
            decode(raw)

    def test_decode_enforces_leg_invariants(self) -> None:
        doc = to_document(_request())
        doc["taskStatus"] = "COMPLETED"
        with pytest.raises(EnvelopeValidationError):
            decode(doc)
