import pytest

from errors import PublishErrorKind
from models import (
    MediaReference,
    Platform,
    PlatformCredential,
    PublishContentMap,
    PublishResult,
    PublishSummary,
)


def test_connected_credential_requires_token():
    with pytest.raises(ValueError):
        PlatformCredential(platform=Platform.LINKEDIN, connected=True)


def test_redacted_credential_may_omit_token():
    credential = PlatformCredential(platform=Platform.LINKEDIN, connected=True, redacted=True)

    assert credential.connected


def test_repr_hides_tokens():
    credential = PlatformCredential(platform=Platform.TWITTER, connected=True, access_token='very-secret')

    assert 'very-secret' not in repr(credential)


def test_from_wire_accepts_legacy_keys():
    credential = PlatformCredential.from_wire(Platform.TWITTER, {
        'connected': True,
        'bearerToken': 'tok',
        'memberId': 'abc',
        'connectedAt': '2024-05-01T10:00:00Z',
    })

    assert credential.connected
    assert credential.access_token == 'tok'
    assert credential.external_id == 'abc'
    assert credential.saved_at.year == 2024


def test_from_wire_without_token_is_disconnected():
    assert not PlatformCredential.from_wire(Platform.LINKEDIN, {'connected': True}).connected
    assert not PlatformCredential.from_wire(Platform.LINKEDIN, None).connected


def test_wire_form_round_trips():
    credential = PlatformCredential(
        platform=Platform.INSTAGRAM,
        connected=True,
        access_token='tok',
        external_id='1789',
        profile={'username': 'ada'},
    )

    restored = PlatformCredential.from_wire(Platform.INSTAGRAM, credential.to_wire())

    assert restored.same_account(credential)
    assert restored.access_token == 'tok'


def test_content_map_drops_empty_and_disabled():
    content_map = PublishContentMap.build(
        {'linkedin': 'Hello', 'instagram': '   ', 'twitter': 'Hi'},
        enabled_platforms=[Platform.LINKEDIN, Platform.INSTAGRAM],
    )

    assert content_map == {Platform.LINKEDIN: 'Hello'}


def test_media_reference():
    assert MediaReference('https://cdn.example.com/a.png').is_public
    assert not MediaReference('/tmp/a.png').is_public
    assert not MediaReference('data:image/png;base64,AAAA').is_public
    assert MediaReference.coerce('') is None


def test_empty_summary():
    summary = PublishSummary()

    assert summary.total == 0
    assert summary.successful == 0
    assert summary.failed == 0
    assert summary.success is False


def test_summary_counts():
    summary = PublishSummary(results=[
        PublishResult(Platform.LINKEDIN, True),
        PublishResult(Platform.TWITTER, False, 'nope', PublishErrorKind.NOT_CONNECTED),
    ])

    assert summary.success is True
    assert summary.successful + summary.failed == summary.total == 2
    assert summary.result_for('twitter').error_kind == PublishErrorKind.NOT_CONNECTED
    assert summary.to_dict()['results'][1]['errorKind'] == 'NOT_CONNECTED'
