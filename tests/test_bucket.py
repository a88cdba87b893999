"""
Tests for bucket and object extraction in s3meter/bucket.py
"""

from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from s3meter.bucket import extract_bucket_and_object, parse_domains


def make_request(path, base_url="http://localhost:3000"):
    return Request(EnvironBuilder(path=path, base_url=base_url).get_environ())


class TestPathStyle:
    """Test /bucket/key addressing."""

    def test_bucket_and_key(self):
        assert extract_bucket_and_object(make_request("/photos/2024/cat.jpg")) == (
            "photos",
            "2024/cat.jpg",
        )

    def test_bucket_only(self):
        assert extract_bucket_and_object(make_request("/photos")) == ("photos", "")
        assert extract_bucket_and_object(make_request("/photos/")) == ("photos", "")

    def test_service_root(self):
        assert extract_bucket_and_object(make_request("/")) == ("", "")


class TestVirtualHostStyle:
    """Test bucket.domain/key addressing."""

    def test_virtual_host(self):
        request = make_request("/2024/cat.jpg", base_url="http://photos.s3.example.com")
        assert extract_bucket_and_object(request, ("s3.example.com",)) == ("photos", "2024/cat.jpg")

    def test_virtual_host_with_port(self):
        request = make_request("/cat.jpg", base_url="http://photos.s3.example.com:9000")
        assert extract_bucket_and_object(request, ("s3.example.com",)) == ("photos", "cat.jpg")

    def test_other_host_uses_path_style(self):
        request = make_request("/photos/cat.jpg", base_url="http://s3.example.com")
        assert extract_bucket_and_object(request, ("s3.example.com",)) == ("photos", "cat.jpg")

    def test_parse_domains(self):
        assert parse_domains(" S3.Example.com, .s3.local. ,") == ("s3.example.com", "s3.local")
        assert parse_domains("") == ()


class BrokenRequest:
    host = "localhost"

    @property
    def path(self):
        raise RuntimeError("request torn down")


class TestExtractionFailures:
    """Test that extraction never raises."""

    def test_failure_yields_empty(self):
        assert extract_bucket_and_object(BrokenRequest()) == ("", "")
        assert extract_bucket_and_object(BrokenRequest(), ("s3.example.com",)) == ("", "")
