"""
Tests for tool output parsers
"""
from crossbroker.utils.output_parsers import (
    format_case_summary, parse_libfuzzer_stats, parse_libtest_line, parse_libtest_output,
    parse_rpk_brokers, parse_rpk_controller, parse_size_token, parse_zookeeper_broker_ids,
    parse_zookeeper_controller
)


LIBTEST_OUTPUT = """
running 4 tests
test client::tests::test_metadata ... ok
test client::tests::test_produce ... FAILED
test client::tests::test_java_interop ... ignored, requires TEST_JAVA_INTEROPT
test protocol::primitives::tests::roundtrip_varint ... ok

failures:
test result: FAILED. 2 passed; 1 failed; 1 ignored; 0 measured; 0 filtered out
"""

RPK_OUTPUT = """CLUSTER
=======
redpanda.5b2c4a4e

BROKERS
=======
ID    HOST         PORT
0     redpanda-0   9092
1*    redpanda-1   9092
2     redpanda-2   9092
"""

LIBFUZZER_CRASH = """INFO: Seed: 1234
INFO: Loaded 1 modules   (8196 inline 8-bit counters)
#2	INITED cov: 310 ft: 311 corp: 120/4Kb exec/s: 0 rss: 40Mb
#1024	pulse  cov: 402 ft: 620 corp: 128/5Kb lim: 16 exec/s: 512 rss: 45Mb
#4000	NEW    cov: 410 ft: 640 corp: 131/6Kb lim: 43 exec/s: 1333 rss: 46Mb L: 12/40 MS: 2 ChangeBit-
thread '<unnamed>' panicked at 'attempt to subtract with overflow', src/protocol/primitives.rs:120:9
==1234== ERROR: libFuzzer: deadly signal
artifact_prefix='/work/fuzz/artifacts/parse_frame/'; Test unit written to /work/fuzz/artifacts/parse_frame/crash-da39a3ee
"""

LIBFUZZER_CLEAN = """#2	INITED cov: 300 ft: 301 corp: 80/2Kb exec/s: 0 rss: 38Mb
#65536	pulse  cov: 350 ft: 420 corp: 85/3Kb lim: 64 exec/s: 21845 rss: 50Mb
#100000	DONE   cov: 351 ft: 422 corp: 86/3Kb lim: 64 exec/s: 25000 rss: 52Mb
Done 100000 runs in 4 second(s)
"""


def test_parse_libtest_line():
    assert parse_libtest_line("test a::b ... ok") == {'name': 'a::b', 'status': 'passed'}
    assert parse_libtest_line("test a::b ... FAILED") == {'name': 'a::b', 'status': 'failed'}
    assert parse_libtest_line("running 3 tests") is None


def test_parse_libtest_output():
    cases = parse_libtest_output(LIBTEST_OUTPUT)
    assert cases == {
        "client::tests::test_metadata": "passed",
        "client::tests::test_produce": "failed",
        "client::tests::test_java_interop": "skipped",
        "protocol::primitives::tests::roundtrip_varint": "passed",
    }
    assert format_case_summary(cases) == "2 passed, 1 failed, 1 skipped"


def test_parse_doctest_lines():
    output = "test src/client/mod.rs - client::Client::new (line 42) ... ok\n"
    assert parse_libtest_output(output) == {"src/client/mod.rs - client::Client::new (line 42)": "passed"}


def test_parse_zookeeper_controller():
    output = 'Connecting to localhost:2181\n{"version":1,"brokerid":2,"timestamp":"1690000000000"}\n'
    assert parse_zookeeper_controller(output) == 2


def test_parse_zookeeper_controller_missing():
    assert parse_zookeeper_controller("Node does not exist: /controller") is None


def test_parse_zookeeper_broker_ids():
    output = "Connecting to localhost:2181\n\nWATCHER::\n[0, 2]\n"
    assert parse_zookeeper_broker_ids(output) == {0, 2}
    assert parse_zookeeper_broker_ids("[]\n") == set()
    assert parse_zookeeper_broker_ids("Node does not exist: /brokers/ids") is None


def test_parse_rpk_brokers():
    brokers = parse_rpk_brokers(RPK_OUTPUT)
    assert [b['node_id'] for b in brokers] == [0, 1, 2]
    assert brokers[1] == {'node_id': 1, 'host': 'redpanda-1', 'port': 9092, 'is_controller': True}
    assert parse_rpk_controller(RPK_OUTPUT) == 1


def test_parse_rpk_controller_without_marker():
    assert parse_rpk_controller("ID HOST PORT\n0 redpanda-0 9092\n") is None


def test_parse_size_token():
    assert parse_size_token("4Kb") == 4096
    assert parse_size_token("2Mb") == 2 * 1024 * 1024
    assert parse_size_token("512b") == 512
    assert parse_size_token("bogus") == 0


def test_parse_libfuzzer_crash():
    stats = parse_libfuzzer_stats(LIBFUZZER_CRASH)
    assert stats['iterations'] == 4000
    assert stats['completed'] is False
    assert stats['corpus_files'] == 131
    assert stats['crash_reason'] is not None
    assert stats['artifacts'] == ["/work/fuzz/artifacts/parse_frame/crash-da39a3ee"]


def test_parse_libfuzzer_crash_reports_last_progress_counter():
    output = "\n".join([
        "#2\tINITED cov: 40 ft: 41 corp: 120/3Kb exec/s: 0 rss: 30Mb",
        "#2048\tpulse  cov: 52 ft: 70 corp: 124/4Kb lim: 21 exec/s: 1024 rss: 31Mb",
        "thread '<unnamed>' panicked at 'index out of bounds', src/protocol/primitives.rs:88:9",
        "==12== ERROR: libFuzzer: deadly signal",
    ])
    stats = parse_libfuzzer_stats(output)
    assert stats['iterations'] == 2048
    assert stats['completed'] is False
    assert stats['crash_reason'] is not None


def test_parse_libfuzzer_clean_run():
    stats = parse_libfuzzer_stats(LIBFUZZER_CLEAN)
    assert stats['iterations'] == 100000
    assert stats['completed'] is True
    assert stats['crash_reason'] is None
    assert stats['cov'] == 351
    assert stats['execs_per_sec'] == 25000


def test_parse_libfuzzer_empty():
    stats = parse_libfuzzer_stats("")
    assert stats['iterations'] == 0
    assert stats['artifacts'] == []
