"""
Test doubles shared by the controller and session tests
"""
import io

import requests
from requests.structures import CaseInsensitiveDict


class FakeTimer:
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    @property
    def live(self):
        return not self.cancelled and not self.fired


class ManualScheduler:
    """Scheduler driven by an explicit clock instead of threads"""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def live_timers(self):
        return [timer for timer in self.timers if timer.live]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [timer for timer in self.live_timers() if timer.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            timer.fired = True
            timer.callback()
        self.now = target


def make_upstream_response(status=200, headers=None, body=b'', url=''):
    """A real requests.Response with its body already buffered"""
    resp = requests.Response()
    resp.status_code = status
    resp.headers = CaseInsensitiveDict(headers or {})
    resp._content = body
    resp._content_consumed = True
    resp.raw = io.BytesIO(body)
    resp.url = url
    return resp
