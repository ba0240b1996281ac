import asyncio

import httpx
import pytest
from google.genai import errors

from conftest import fake_genai_client, finding
from verisight.analysis_client import RATE_LIMITED_MESSAGE, AnalysisClient
from verisight.errors import AnalysisError, MalformedResponseError, RateLimitedError, TransportError
from verisight.schemas import AnalysisRequest, AudioPayload, MediaFrame
from verisight.session import SessionContext


def make_frames(count):
    return [MediaFrame(image_bytes=bytes([index]) * 8, timestamp=float(index)) for index in range(count)]


def inline_parts(call):
    parts = call["contents"][0].parts
    return [p.inline_data for p in parts if p.inline_data is not None]


def test_request_keeps_even_indexed_frames():
    frames = make_frames(7)
    request = AnalysisRequest.from_sampled(frames, None)

    assert [f.timestamp for f in request.frames] == [0.0, 2.0, 4.0, 6.0]
    wire = request.to_wire()
    assert wire["audioBase64"] is None
    assert wire["frames"][1] == {"base64": frames[2].base64, "timestamp": 2.0}


def test_analyze_sends_even_frames_and_audio(raw_response):
    client = fake_genai_client(raw_response)
    audio = AudioPayload(wav_bytes=b"RIFF" + b"\x00" * 40 + b"\x01\x00" * 16)

    report = asyncio.run(AnalysisClient(genai_client=client).analyze(make_frames(8), audio, SessionContext(operator_id="007")))

    call = client.aio.models.calls[0]
    blobs = inline_parts(call)
    assert [b.mime_type for b in blobs] == ["image/jpeg"] * 4 + ["audio/wav"]
    assert blobs[1].data == make_frames(8)[2].image_bytes
    assert call["config"].response_mime_type == "application/json"
    assert report.metadata.frames_processed == 8
    assert report.metadata.audio_processed is True


def test_analyze_without_audio(raw_response):
    client = fake_genai_client(raw_response)

    report = asyncio.run(AnalysisClient(genai_client=client).analyze(make_frames(3), None))

    blobs = inline_parts(client.aio.models.calls[0])
    assert [b.mime_type for b in blobs] == ["image/jpeg", "image/jpeg"]
    assert report.metadata.audio_processed is False


def test_analyze_applies_normalization(raw_response):
    raw_response.update(isAuthentic=True, score=95, analysis=[finding("FAIL", "Deepfake/Identity Swap")])

    report = asyncio.run(AnalysisClient(genai_client=fake_genai_client(raw_response)).analyze(make_frames(2), None))

    assert report.is_authentic is False
    assert report.score == 40
    assert report.confidence_level == "HIGH"


def test_missing_analysis_is_malformed(raw_response):
    del raw_response["analysis"]
    client = AnalysisClient(genai_client=fake_genai_client(raw_response))

    with pytest.raises(MalformedResponseError, match="Please retry"):
        asyncio.run(client.analyze(make_frames(2), None))


@pytest.mark.parametrize("text", ["", "not json", "[]", "null"])
def test_unparseable_response_is_malformed(text):
    client = AnalysisClient(genai_client=fake_genai_client(text=text))

    with pytest.raises(MalformedResponseError):
        asyncio.run(client.analyze(make_frames(2), None))


def test_rate_limit_is_rephrased():
    error = errors.ClientError(
        429, {"error": {"code": 429, "message": "Resource has been exhausted", "status": "RESOURCE_EXHAUSTED"}}
    )
    client = AnalysisClient(genai_client=fake_genai_client(error=error))

    with pytest.raises(RateLimitedError) as raised:
        asyncio.run(client.analyze(make_frames(2), None))

    assert str(raised.value) == RATE_LIMITED_MESSAGE


def test_other_remote_errors_keep_their_message():
    error = errors.ServerError(500, {"error": {"code": 500, "message": "Internal model failure", "status": "INTERNAL"}})
    client = AnalysisClient(genai_client=fake_genai_client(error=error))

    with pytest.raises(AnalysisError, match="Internal model failure") as raised:
        asyncio.run(client.analyze(make_frames(2), None))

    assert not isinstance(raised.value, (RateLimitedError, MalformedResponseError))


def test_network_failure_is_transport_error():
    client = AnalysisClient(genai_client=fake_genai_client(error=httpx.ConnectError("Connection refused")))

    with pytest.raises(TransportError, match="Connection refused"):
        asyncio.run(client.analyze(make_frames(2), None))


def test_missing_api_key(monkeypatch):
    from verisight import analysis_client

    monkeypatch.setattr(analysis_client.settings, "GOOGLE_API_KEY", "")

    with pytest.raises(AnalysisError, match="GOOGLE_API_KEY"):
        asyncio.run(AnalysisClient().analyze(make_frames(1), None))
