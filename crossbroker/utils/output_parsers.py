"""
Centralized parsing of tool output.

Covers libtest case lines, ZooKeeper controller znodes, `rpk cluster info`
broker tables and libFuzzer progress lines. It has NO dependencies on
models.py so parsers can be reused by any component.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

_LIBTEST_CASE_RE = re.compile(
    r"^test (?P<name>.+?) \.\.\. (?P<status>ok|FAILED|ignored)(?:,.*)?$"
)

_ZK_BROKERID_RE = re.compile(r'"brokerid"\s*:\s*(?P<id>-?\d+)')

_ZK_ID_LIST_RE = re.compile(r"^\[(?P<ids>[0-9,\s]*)\]$")

_RPK_BROKER_RE = re.compile(r"^(?P<id>\d+)(?P<controller>\*)?\s+(?P<host>\S+)\s+(?P<port>\d+)")

_LIBFUZZER_PROGRESS_RE = re.compile(
    r"#(?P<iter>\d+)\s+"
    r"(?P<kind>INITED|NEW|REDUCE|pulse|DONE|RELOAD)\s+"
    r"(?:cov:\s*(?P<cov>\d+)\s+)?"
    r"(?:ft:\s*(?P<ft>\d+)\s+)?"
    r"(?:corp:\s*(?P<corp_files>\d+)/(?P<corp_size>\S+))?"
    r"(?:.*?exec/s:\s*(?P<execs>\d+))?",
)

_LIBFUZZER_DONE_RE = re.compile(r"^Done (?P<runs>\d+) runs in (?P<secs>\d+) second")

_LIBFUZZER_ARTIFACT_RE = re.compile(r"Test unit written to (?P<path>\S+)")

_LIBFUZZER_CRASH_RE = re.compile(
    r"ERROR: libFuzzer: (?P<reason>deadly signal|out-of-memory|timeout|leak|fuzz target exited)"
    r"|ERROR: AddressSanitizer|panicked at"
)

LIBTEST_STATUSES = {
    'ok': 'passed',
    'FAILED': 'failed',
    'ignored': 'skipped',
}


def parse_libtest_line(line: str) -> Optional[Dict[str, str]]:
    """Parse one `test <id> ... <status>` line into {'name', 'status'}"""
    match = _LIBTEST_CASE_RE.match(line.rstrip())
    if not match:
        return None
    return {
        'name': match.group('name'),
        'status': LIBTEST_STATUSES[match.group('status')],
    }


def parse_libtest_output(output: str) -> Dict[str, str]:
    """Map every reported case id to passed/failed/skipped"""
    cases = {}
    for line in output.splitlines():
        case = parse_libtest_line(line)
        if case:
            cases[case['name']] = case['status']
    return cases


def parse_zookeeper_controller(output: str) -> Optional[int]:
    """Extract the broker id from the /controller znode payload"""
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith('{'):
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            match = _ZK_BROKERID_RE.search(line)
            if match:
                return int(match.group('id'))
            continue
        if isinstance(payload, dict) and 'brokerid' in payload:
            return int(payload['brokerid'])

    match = _ZK_BROKERID_RE.search(output)
    if match:
        return int(match.group('id'))
    logger.debug(f"No controller found in ZooKeeper output: {output!r}")
    return None


def parse_zookeeper_broker_ids(output: str) -> Optional[Set[int]]:
    """Broker ids from `ls /brokers/ids`; None when the znode listing is absent"""
    for line in reversed(output.splitlines()):
        match = _ZK_ID_LIST_RE.match(line.strip())
        if match:
            return {int(token) for token in match.group('ids').split(',') if token.strip()}
    return None


def parse_rpk_brokers(output: str) -> List[Dict[str, Any]]:
    """Parse the BROKERS table of `rpk cluster info`"""
    brokers = []
    for line in output.splitlines():
        match = _RPK_BROKER_RE.match(line.strip())
        if not match:
            continue
        brokers.append({
            'node_id': int(match.group('id')),
            'host': match.group('host'),
            'port': int(match.group('port')),
            'is_controller': match.group('controller') is not None,
        })
    return brokers


def parse_rpk_controller(output: str) -> Optional[int]:
    for broker in parse_rpk_brokers(output):
        if broker['is_controller']:
            return broker['node_id']
    return None


def parse_size_token(token: str) -> int:
    """Convert libFuzzer corpus sizes like 12Kb or 3Mb to bytes"""
    match = re.match(r"^([0-9]+(?:\.[0-9]+)?)([kmg]?)(?:i?b)?$", (token or "").strip(), re.IGNORECASE)
    if not match:
        return 0
    scale = {'': 1, 'k': 1024, 'm': 1024 ** 2, 'g': 1024 ** 3}[match.group(2).lower()]
    return int(float(match.group(1)) * scale)


def parse_libfuzzer_stats(output: str) -> Dict[str, Any]:
    """
    Extract final progress counters from a libFuzzer log.

    `iterations` is exact only when `completed` is set (closing `Done N runs`
    line). Otherwise it is the last reported progress counter, a power of two
    or pulse figure at or below the iteration that crashed or was cut off.
    """
    stats: Dict[str, Any] = {
        'iterations': 0,
        'cov': 0,
        'ft': 0,
        'corpus_files': 0,
        'corpus_size_bytes': 0,
        'execs_per_sec': 0,
        'completed': False,
        'crash_reason': None,
        'artifacts': [],
    }
    if not output:
        return stats

    for line in output.splitlines():
        done = _LIBFUZZER_DONE_RE.search(line)
        if done:
            stats['iterations'] = int(done.group('runs'))
            stats['completed'] = True
            continue

        artifact = _LIBFUZZER_ARTIFACT_RE.search(line)
        if artifact:
            stats['artifacts'].append(artifact.group('path'))

        crash = _LIBFUZZER_CRASH_RE.search(line)
        if crash and stats['crash_reason'] is None:
            stats['crash_reason'] = crash.group('reason') or line.strip()

        progress = _LIBFUZZER_PROGRESS_RE.search(line)
        if not progress:
            continue
        stats['iterations'] = max(stats['iterations'], int(progress.group('iter')))
        if progress.group('cov'):
            stats['cov'] = int(progress.group('cov'))
        if progress.group('ft'):
            stats['ft'] = int(progress.group('ft'))
        if progress.group('corp_files'):
            stats['corpus_files'] = int(progress.group('corp_files'))
            stats['corpus_size_bytes'] = parse_size_token(progress.group('corp_size'))
        if progress.group('execs'):
            stats['execs_per_sec'] = int(progress.group('execs'))

    return stats


def format_case_summary(cases: Dict[str, str]) -> str:
    passed = sum(1 for status in cases.values() if status == 'passed')
    failed = sum(1 for status in cases.values() if status == 'failed')
    skipped = sum(1 for status in cases.values() if status == 'skipped')
    return f"{passed} passed, {failed} failed, {skipped} skipped"
