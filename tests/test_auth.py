import pytest

from parley.auth import issue_token, verify_token

SECRET = "s3cret"
NOW = 1_700_000_000


def test_round_trip():
    token = issue_token("alice", SECRET, now=NOW)
    assert verify_token(token, SECRET, max_age=3600, now=NOW + 10) == "alice"


def test_wrong_secret():
    token = issue_token("alice", SECRET, now=NOW)
    assert verify_token(token, "other", max_age=3600, now=NOW) is None


def test_tampered_user():
    _, ts, sig = issue_token("alice", SECRET, now=NOW).split(":")
    assert verify_token(f"mallory:{ts}:{sig}", SECRET, max_age=3600, now=NOW) is None


def test_expired():
    token = issue_token("alice", SECRET, now=NOW)
    assert verify_token(token, SECRET, max_age=3600, now=NOW + 3601) is None


def test_issued_in_the_future():
    token = issue_token("alice", SECRET, now=NOW + 600)
    assert verify_token(token, SECRET, max_age=3600, now=NOW) is None


@pytest.mark.parametrize("junk", ["", "abc", "a:b", "a:notanumber:sig", "a:1:2:3", None])
def test_malformed(junk):
    assert verify_token(junk, SECRET, max_age=3600, now=NOW) is None


@pytest.mark.parametrize("bad", ["", "a:b"])
def test_issue_rejects_bad_ids(bad):
    with pytest.raises(ValueError):
        issue_token(bad, SECRET)
