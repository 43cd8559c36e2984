"""
Pytest fixtures for the Kaleido miner test suite.
"""
import asyncio
import json
import os
import sys
from unittest import mock

import pytest
import requests
from requests.structures import CaseInsensitiveDict

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kaleido_miner import MinerWorker

WALLET = "0xABCD000000000000000000000000000000001234"
START_MS = 1_700_000_000_000


def make_response(status=200, data=None, headers=None, url="https://test.invalid/api"):
    """Build a real requests.Response so raise_for_status behaves normally"""
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(data if data is not None else {}).encode()
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = url
    response.reason = "test"
    return response


class FakeClock:
    """Millisecond clock that only moves when told to"""

    def __init__(self, now=START_MS):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1000)


class FakeSleep:
    """Records requested delays and advances the fake clock instead of waiting"""

    def __init__(self, clock=None):
        self.clock = clock
        self.delays = []
        self.on_sleep = None

    async def __call__(self, seconds):
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return FakeSleep(clock)


@pytest.fixture
def http():
    return mock.Mock(spec=requests.Session)


@pytest.fixture
def worker(tmp_path, http, clock, sleeper):
    return MinerWorker(WALLET, 1, session_dir=str(tmp_path), http=http, clock=clock, sleep=sleeper)


@pytest.fixture
def started_worker(worker, clock):
    """A worker that is mid-session, as if initialize() had succeeded"""
    worker.mining_state['start_time'] = clock()
    worker.referral_bonus = 0.1
    worker.session = 4242
    worker.is_active = True
    return worker
