"""Tests for the command line interface."""

import json

import pytest
import yaml
from click.testing import CliRunner

from meshsynth.cli.main import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invalid_path(tmp_path):
    path = tmp_path / "invalid.yml"
    path.write_text(
        "meshes:\n  Mesh: {}\n"
        "virtual_services:\n  Service:\n    mesh: Mesh\n    provider: Ghost\n"
    )
    return path


class TestSynthCommand:
    """Tests for the synth command."""

    def test_json(self, runner, example_path):
        result = runner.invoke(cli, ["-t", str(example_path), "synth", "-f", "json"])
        assert result.exit_code == 0, result.output
        template = json.loads(result.stdout)
        assert "LoadBalancerHostname" in template["Outputs"]
        assert template["Description"] == "App Mesh virtual gateway with end-to-end TLS"

    def test_yaml_with_region(self, runner, example_path):
        result = runner.invoke(
            cli, ["-t", str(example_path), "--region", "us-west-2", "synth", "-f", "yaml"]
        )
        assert result.exit_code == 0, result.output
        template = yaml.safe_load(result.stdout)
        assert "us-west-2" in json.dumps(template)
        assert "AWS::Region" not in json.dumps(template)

    def test_output_file(self, runner, example_path, tmp_path):
        output = tmp_path / "out" / "template.json"
        result = runner.invoke(
            cli, ["-t", str(example_path), "synth", "-f", "json", "-o", str(output)]
        )
        assert result.exit_code == 0, result.output
        assert json.loads(output.read_text())["Resources"]

    def test_invalid(self, runner, invalid_path):
        result = runner.invoke(cli, ["-t", str(invalid_path), "synth"])
        assert result.exit_code == 1
        assert "Ghost" in result.output

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["-t", str(tmp_path / "missing.yml"), "synth"])
        assert result.exit_code == 1
        assert "Topology not found" in result.output

    def test_document_not_a_mapping(self, runner, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        result = runner.invoke(cli, ["-t", str(path), "synth"])
        assert result.exit_code == 1
        assert "Invalid topology" in result.output

    def test_override_render_failure(self, runner, tmp_path):
        path = tmp_path / "override.yml"
        path.write_text("meshes:\n  Mesh:\n    overrides:\n      Spec.EgressFilter.Type.Deep: x\n")
        result = runner.invoke(cli, ["-t", str(path), "synth"])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "Failed to render Mesh/Resource" in result.output


class TestValidateCommand:
    """Tests for the validate command."""

    def test_valid(self, runner, example_path):
        result = runner.invoke(cli, ["-t", str(example_path), "validate", "--check-synthesis"])
        assert result.exit_code == 0, result.output
        assert "Validation passed" in result.output

    def test_invalid(self, runner, invalid_path):
        result = runner.invoke(cli, ["-t", str(invalid_path), "validate"])
        assert result.exit_code == 1
        assert "Validation failed" in result.output

    def test_malformed_yaml(self, runner, tmp_path):
        path = tmp_path / "broken.yml"
        path.write_text("meshes: [\n")
        result = runner.invoke(cli, ["-t", str(path), "validate"])
        assert result.exit_code == 1
        assert "Malformed YAML" in result.output

    def test_strict_warnings(self, runner, tmp_path):
        path = tmp_path / "warn.yml"
        path.write_text("certificates:\n  Unused:\n    domain_name: example.com\n")
        assert runner.invoke(cli, ["-t", str(path), "validate"]).exit_code == 0
        result = runner.invoke(cli, ["-t", str(path), "validate", "--strict"])
        assert result.exit_code == 1
        assert "strict mode" in result.output


class TestResolveCommand:
    """Tests for the resolve command."""

    def test_attribute(self, runner, example_path):
        result = runner.invoke(cli, ["-t", str(example_path), "resolve", "LoadBalancer.DNSName"])
        assert result.exit_code == 0, result.output
        value = json.loads(result.stdout)
        assert value["Fn::GetAtt"][1] == "DNSName"

    def test_literal_attribute(self, runner, example_path):
        result = runner.invoke(cli, ["-t", str(example_path), "resolve", "${Namespace.Name}"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == "test"

    def test_pseudo_with_region(self, runner, example_path):
        result = runner.invoke(
            cli, ["-t", str(example_path), "--region", "eu-west-1", "resolve", "AWS::Region"]
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == "eu-west-1"

    def test_dependencies(self, runner, example_path):
        result = runner.invoke(
            cli, ["-t", str(example_path), "resolve", "GatewayService", "--format", "deps"]
        )
        assert result.exit_code == 0, result.output
        assert "Cluster (cluster)" in result.output
        assert "GatewayTaskDefinition (task_definition)" in result.output

    def test_unknown(self, runner, example_path):
        result = runner.invoke(cli, ["-t", str(example_path), "resolve", "Nowhere.Name"])
        assert result.exit_code == 1
        assert "Resolution error" in result.output


class TestInfoCommands:
    """Tests for summary commands."""

    def test_info(self, runner, example_path):
        result = runner.invoke(cli, ["-t", str(example_path), "info"])
        assert result.exit_code == 0, result.output
        assert "AppMeshTlsGatewayDemoStack" in result.output
        assert "Total entries: 19" in result.output

    def test_resources(self, runner, tmp_path):
        path = tmp_path / "mesh.yml"
        path.write_text("meshes:\n  Mesh: {}\n")
        result = runner.invoke(cli, ["-t", str(path), "resources"])
        assert result.exit_code == 0, result.output
        assert "Mesh73A573F6" in result.output

    def test_resources_empty_filter(self, runner, tmp_path):
        path = tmp_path / "mesh.yml"
        path.write_text("meshes:\n  Mesh: {}\n")
        result = runner.invoke(cli, ["-t", str(path), "resources", "--type", "AWS::S3::Bucket"])
        assert result.exit_code == 0, result.output
        assert "No resources" in result.output

    def test_diagram_stdout(self, runner, example_path):
        result = runner.invoke(cli, ["-t", str(example_path), "diagram", "--stdout"])
        assert result.exit_code == 0, result.output
        assert "flowchart LR" in result.output

    def test_diagram_files(self, runner, example_path, tmp_path):
        result = runner.invoke(
            cli, ["-t", str(example_path), "diagram", "-f", "all", "-o", str(tmp_path)]
        )
        assert result.exit_code == 0, result.output
        assert (tmp_path / "topology.md").exists()
        assert (tmp_path / "topology.dot").exists()

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "meshsynth" in result.output
