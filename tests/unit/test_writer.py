"""
Unit tests for pipeline_definition.writer.
"""

import yaml

from pipeline_definition.devsecops import build_devsecops_pipeline
from pipeline_definition.loader import load_definition, parse_definition
from pipeline_definition.writer import definition_to_dict, dump_definition, write_definition


class TestWriter:
    """Test suite for serializing definitions."""

    def test_generated_pipeline_survives_reload(self, tmp_path):
        definition = build_devsecops_pipeline()

        path = write_definition(definition, tmp_path / "bitbucket-pipelines.yml")
        reloaded = load_definition(path)

        assert reloaded.image == definition.image
        assert reloaded.caches == definition.caches
        assert reloaded.services == definition.services
        assert reloaded.pipelines == definition.pipelines

    def test_layout(self):
        data = yaml.safe_load(dump_definition(build_devsecops_pipeline()))

        assert list(data) == ["image", "definitions", "pipelines"]
        assert list(data["pipelines"]) == ["default", "branches"]
        production = data["pipelines"]["branches"]["main"][-1]["step"]
        assert production["trigger"] == "manual"
        assert production["deployment"] == "production"

    def test_long_commands_not_wrapped(self):
        text = dump_definition(build_devsecops_pipeline())
        sonar_lines = [line for line in text.splitlines() if "sonar-scanner " in line]
        # Once in the default pipeline, once for the production branch
        assert len(sonar_lines) == 2
        assert all("-Dsonar.token=$SONAR_TOKEN" in line for line in sonar_lines)

    def test_custom_variables_written_first(self):
        definition = parse_definition(
            """
pipelines:
  custom:
    rebuild:
      - variables:
          - name: TARGET
      - step:
          name: Rebuild
          script: [echo $TARGET]
"""
        )
        items = definition_to_dict(definition)["pipelines"]["custom"]["rebuild"]

        assert items[0] == {"variables": [{"name": "TARGET"}]}
        assert items[1]["step"]["name"] == "Rebuild"
