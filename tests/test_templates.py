from __future__ import annotations

import pytest

from prenv.models import EnvArgs, PullRequestEnvArgs
from prenv.services.errors import ConfigurationError, VerificationError
from prenv.services.templates import Manifest, remove_from_dir, render_string, render_to_dir


def test_render_string_exposes_environment_and_pull_request() -> None:
    env = EnvArgs(name="pr-42", pull_request=PullRequestEnvArgs(number=42, head_sha="abc123"))
    out = render_string("{{ environment.name }}/{{ pull_request.number }}@{{ pull_request.head_sha }}", env.template_context())
    assert out == "pr-42/42@abc123"


def test_render_string_missing_value_is_verification_error() -> None:
    with pytest.raises(VerificationError, match="missing template value"):
        render_string("{{ nope }}", {}, name="test")


def test_render_string_syntax_error_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="invalid template"):
        render_string("{{ unclosed", {}, name="test")


def test_filters() -> None:
    assert render_string("{{ 'a' | b64enc }}", {}) == "YQ=="
    assert render_string("{{ value | to_json }}", {"value": 'say "hi"'}) == '"say \\"hi\\""'
    assert render_string("{{ ('a,b' | split)[1] }}", {}) == "b"
    env = EnvArgs(name="pr-1", app_name_template="x")
    assert render_string("{{ env | to_json }}", {"env": env}) == '{"name": "pr-1", "appNameTemplate": "x"}'


def test_render_to_dir_and_remove(tmp_path) -> None:
    manifests = [
        Manifest(name="a.yaml", template="name: {{ name }}\n", data={"name": "a"}),
        Manifest(name="nested/b.yaml", template="b\n"),
    ]
    written = render_to_dir(tmp_path, manifests)

    assert written == ["a.yaml", "nested/b.yaml"]
    assert (tmp_path / "a.yaml").read_text() == "name: a\n"
    assert remove_from_dir(tmp_path, ["a.yaml", "missing.yaml"]) == ["a.yaml"]
    assert not (tmp_path / "a.yaml").exists()


def test_render_to_dir_rejects_escaping_paths(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="escapes"):
        render_to_dir(tmp_path / "root", [Manifest(name="../outside.yaml", template="x")])
