import random

import pytest

from src.genorch.workflow import (
    MAX_SEED,
    CompletionLatch,
    WorkflowRun,
    WorkflowSignal,
    WorkflowStatus,
    build_two_pass_workflow,
    extract_model_name,
    extract_workflow_error,
    final_sampler_node,
    normalize_workflow_error,
    parse_aspect_ratio,
    resolve_seed,
)


@pytest.mark.parametrize(
    ("ratio", "expected"),
    [
        (None, (832, 832)),
        ("1:1", (832, 832)),
        ("16:9", (1088, 640)),
        ("9:16", (640, 1088)),
        ("garbage", (832, 832)),
        ("0:5", (832, 832)),
    ],
)
def test_parse_aspect_ratio_known_values(ratio, expected):
    assert parse_aspect_ratio(ratio) == expected


def test_parse_aspect_ratio_custom_ratio_is_multiple_of_64():
    width, height = parse_aspect_ratio("5:4")

    assert width % 64 == 0
    assert height % 64 == 0
    assert width >= 768 and height >= 768
    assert width > height


def test_resolve_seed_keeps_explicit_value_and_draws_otherwise():
    assert resolve_seed(42) == 42
    drawn = resolve_seed(None, random.Random(1))
    assert 0 <= drawn <= MAX_SEED
    assert 0 <= resolve_seed(-1, random.Random(2)) <= MAX_SEED


def test_two_pass_workflow_wires_nodes():
    workflow = build_two_pass_workflow(
        "a castle",
        negative_prompt="blurry",
        width=832,
        height=832,
        steps=20,
        seed=7,
        checkpoint="model.safetensors",
    )

    assert set(workflow) == {"2", "3", "4", "5", "6", "8", "10", "12", "13"}
    assert workflow["3"]["inputs"]["text"] == "a castle"
    assert workflow["4"]["inputs"]["text"] == "blurry"
    assert workflow["8"]["inputs"]["width"] == 1023
    assert workflow["10"]["inputs"]["steps"] == 12
    assert workflow["10"]["inputs"]["denoise"] == pytest.approx(0.65)
    assert workflow["10"]["inputs"]["latent_image"] == ["8", 0]
    assert workflow["6"]["inputs"]["seed"] == workflow["10"]["inputs"]["seed"] == 7
    assert extract_model_name(workflow) == "model.safetensors"


def test_extract_model_name_without_loader():
    assert extract_model_name({"1": {"class_type": "SaveImage"}}) == "unknown"


def test_extract_workflow_error_prefers_node_errors():
    payload = {
        "error": {"type": "prompt_outputs_failed_validation", "message": "Prompt outputs failed validation"},
        "node_errors": {
            "2": {
                "class_type": "CheckpointLoaderSimple",
                "errors": [
                    {
                        "type": "value_not_in_list",
                        "message": "Value not in list",
                        "details": "ckpt_name: 'missing.safetensors' not in []",
                    }
                ],
            }
        },
    }

    message = extract_workflow_error(payload)

    assert message.startswith("node 2 (CheckpointLoaderSimple): Value not in list")
    assert "requested model installed" in normalize_workflow_error(message)


def test_extract_workflow_error_fallbacks():
    assert extract_workflow_error({"exception_message": " boom ", "node_type": "KSampler"}) == "KSampler: boom"
    assert extract_workflow_error({"error": {"message": "bad", "details": "x"}}) == "bad: x"
    assert extract_workflow_error({"error": "plain"}) == "plain"
    assert extract_workflow_error({"message": "msg"}) == "msg"
    assert extract_workflow_error(None) == "workflow failed"
    assert extract_workflow_error("") == "workflow failed"


def test_normalize_workflow_error_truncates_and_maps_oom():
    assert "GPU memory" in normalize_workflow_error("CUDA out of memory. Tried to allocate")
    long_message = "x" * 800
    normalized = normalize_workflow_error(long_message)
    assert len(normalized) == 500
    assert normalized.endswith("...")


def test_run_push_events_progress_and_complete():
    run = WorkflowRun(run_id="run-1")

    assert run.handle_event({"type": "status", "data": {"status": {}}}) is WorkflowSignal.NONE
    assert run.status is WorkflowStatus.QUEUED
    assert run.handle_event({"type": "execution_start", "data": {"prompt_id": "run-1"}}) is WorkflowSignal.NONE
    assert run.status is WorkflowStatus.EXECUTING
    assert run.handle_event({"type": "progress", "data": {"value": 5, "max": 20}}) is WorkflowSignal.NONE
    assert run.percent == pytest.approx(25.0)
    assert run.handle_event({"type": "progress", "data": {"value": 20, "max": 20}}) is WorkflowSignal.COMPLETE
    assert run.history == [WorkflowStatus.SUBMITTED, WorkflowStatus.QUEUED]


def test_final_sampler_is_the_one_feeding_the_decoder():
    workflow = build_two_pass_workflow("p", width=64, height=64, seed=1)
    assert final_sampler_node(workflow) == "10"
    assert final_sampler_node({"1": {"class_type": "KSampler", "inputs": {}}}) == "1"
    assert final_sampler_node({}) is None


def test_progress_only_completes_on_final_sampler():
    run = WorkflowRun(run_id="run-1", final_node="10")
    assert run.handle_event({"type": "progress", "data": {"value": 20, "max": 20, "node": "6"}}) is WorkflowSignal.NONE
    assert run.node == "6"
    assert run.handle_event({"type": "executing", "data": {"node": "10"}}) is WorkflowSignal.NONE
    assert run.handle_event({"type": "progress", "data": {"value": 6, "max": 6}}) is WorkflowSignal.COMPLETE


def test_run_executing_with_no_node_signals_completion():
    run = WorkflowRun(run_id="run-1")
    assert run.handle_event({"type": "executing", "data": {"node": "6", "prompt_id": "run-1"}}) is WorkflowSignal.NONE
    assert run.node == "6"
    assert run.handle_event({"type": "executing", "data": {"node": None, "prompt_id": "run-1"}}) is WorkflowSignal.COMPLETE


def test_run_ignores_events_for_other_runs():
    run = WorkflowRun(run_id="run-1")
    signal = run.handle_event({"type": "executing", "data": {"node": None, "prompt_id": "run-2"}})
    assert signal is WorkflowSignal.NONE
    assert run.status is WorkflowStatus.SUBMITTED


def test_run_execution_error_fails_once():
    run = WorkflowRun(run_id="run-1")
    signal = run.handle_event(
        {
            "type": "execution_error",
            "data": {"prompt_id": "run-1", "node_type": "KSampler", "exception_message": "CUDA out of memory"},
        }
    )

    assert signal is WorkflowSignal.FAILED
    assert run.status is WorkflowStatus.ERRORED
    assert "GPU memory" in (run.error or "")
    assert run.handle_event({"type": "execution_success", "data": {}}) is WorkflowSignal.NONE
    assert not run.transition(WorkflowStatus.COMPLETED)


def test_run_executed_event_records_output_reference():
    run = WorkflowRun(run_id="run-1")
    run.handle_event(
        {
            "type": "executed",
            "data": {"prompt_id": "run-1", "output": {"images": [{"filename": "a.png", "type": "output"}]}},
        }
    )
    assert run.output_ref == {"filename": "a.png", "type": "output"}


def test_apply_history_completion_and_pending():
    run = WorkflowRun(run_id="run-1")

    assert run.apply_history({}) is False
    assert run.apply_history({"run-1": {"outputs": {}, "status": {"completed": False}}}) is False
    done = run.apply_history(
        {
            "run-1": {
                "outputs": {"13": {"images": [{"filename": "genorch_0001.png", "subfolder": "", "type": "output"}]}},
                "status": {"status_str": "success", "completed": True},
            }
        }
    )

    assert done is True
    assert run.status is WorkflowStatus.COMPLETED
    assert run.output_ref is not None and run.output_ref["filename"] == "genorch_0001.png"


def test_apply_history_error_status():
    run = WorkflowRun(run_id="run-1")
    done = run.apply_history(
        {
            "run-1": {
                "outputs": {},
                "status": {
                    "status_str": "error",
                    "completed": False,
                    "messages": [
                        ["execution_start", {"prompt_id": "run-1"}],
                        ["execution_error", {"exception_message": "sampler exploded"}],
                    ],
                },
            }
        }
    )

    assert done is True
    assert run.status is WorkflowStatus.ERRORED
    assert run.error == "sampler exploded"


def test_apply_history_completed_without_image_fails():
    run = WorkflowRun(run_id="run-1")
    assert run.apply_history({"run-1": {"outputs": {}, "status": {"completed": True}}}) is True
    assert run.status is WorkflowStatus.ERRORED


def test_time_out_is_terminal():
    run = WorkflowRun(run_id="run-1")
    run.time_out(30)
    assert run.status is WorkflowStatus.TIMED_OUT
    assert run.terminal
    assert "30s" in (run.error or "")
    run.fail("late error")
    assert run.status is WorkflowStatus.TIMED_OUT


def test_completion_latch_resolves_once():
    latch = CompletionLatch()
    assert not latch.claimed
    assert latch.claim("push") is True
    assert latch.claim("poll") is False
    assert latch.claimed_by == "push"
    latch.release("poll")
    assert latch.claimed_by == "push"
    latch.release("push")
    assert latch.claim("poll") is True
