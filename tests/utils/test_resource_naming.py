"""
Tests for resource naming utilities.
"""

import pytest

from kubesync.errors import MalformedInputError
from kubesync.utils.resource_naming import (
    MAX_NAMESPACED_NAME_LENGTH,
    convert_labels_to_selector,
    get_app_root_volume_name,
    get_component_selector,
    get_dns1123_name,
    namespace_object_name,
    parse_image_name,
    secret_key_name,
    truncate_string,
)


class TestNamespaceObjectName:
    def test_joins_names(self):
        assert namespace_object_name("nodejs", "myapp") == "nodejs-myapp"

    def test_slashes_become_hyphens(self):
        assert namespace_object_name("openshift/nodejs", "app") == "openshift-nodejs-app"

    def test_truncated_to_leave_room_for_volume_suffix(self):
        name = namespace_object_name("c" * 40, "a" * 40)

        assert len(name) == MAX_NAMESPACED_NAME_LENGTH
        assert len(get_app_root_volume_name(name)) < 64

    @pytest.mark.parametrize("component, app", [("", "app"), ("comp", "")])
    def test_blank_names_rejected(self, component, app):
        with pytest.raises(MalformedInputError):
            namespace_object_name(component, app)


class TestParseImageName:
    @pytest.mark.parametrize("image, expected", [
        ("nodejs", ("", "nodejs", "latest", "")),
        ("nodejs:10", ("", "nodejs", "10", "")),
        ("openshift/nodejs:10", ("openshift", "nodejs", "10", "")),
        ("openshift/nodejs", ("openshift", "nodejs", "latest", "")),
        ("nodejs@sha256:abc", ("", "nodejs", "", "sha256:abc")),
        ("openshift/nodejs@sha256:abc", ("openshift", "nodejs", "", "sha256:abc")),
    ])
    def test_valid(self, image, expected):
        assert parse_image_name(image) == expected

    @pytest.mark.parametrize("image", ["", ":10", "a:b:c", "a@b@c", "@sha256:abc"])
    def test_invalid(self, image):
        with pytest.raises(MalformedInputError):
            parse_image_name(image)


class TestMisc:
    def test_truncate(self):
        assert truncate_string("abcdef", 3) == "abc"
        assert truncate_string("ab", 3) == "ab"

    def test_dns1123(self):
        assert get_dns1123_name("-My_App.Name-") == "my-app-name"

    def test_selector_with_existence_label(self):
        assert convert_labels_to_selector({"app": "myapp", "tier": ""}) == "app=myapp,tier"

    def test_component_selector(self):
        assert get_component_selector("web", "shop") == (
            "app.kubernetes.io/instance=web,app.kubernetes.io/part-of=shop"
        )
        assert get_component_selector("web") == "app.kubernetes.io/instance=web"

    def test_secret_key_name(self):
        assert secret_key_name("my-db", "port") == "COMPONENT_MY_DB_PORT"
