import json

from hypersearch.logging_utils import EventLogger, build_logger


def test_event_logger_writes_jsonl(tmp_path):
    logger = build_logger(str(tmp_path / "logs"), "events")
    logger.log("swarm_completed", {"swarm_id": "a.b", "best_err_score": 1.5})
    logger.log("search_over", {"last_good_sprint": 1})
    logger.close()

    lines = (tmp_path / "logs" / "events.jsonl").read_text().splitlines()
    records = [json.loads(line) for line in lines]

    assert [record["event"] for record in records] == ["swarm_completed", "search_over"]
    assert records[0]["swarm_id"] == "a.b"
    assert records[0]["best_err_score"] == 1.5
    assert all("ts" in record for record in records)


def test_event_logger_appends(tmp_path):
    path = tmp_path / "events.jsonl"
    first = EventLogger(str(path))
    first.log("a", {})
    first.close()
    # Closing twice is harmless
    first.close()

    second = EventLogger(str(path))
    second.log("b", {})
    second.close()

    assert [json.loads(line)["event"] for line in path.read_text().splitlines()] == ["a", "b"]
