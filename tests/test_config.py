"""Tests for pipeline document parsing.

Covers:
- Minimal and full documents
- Required keys and structural validation (ConfigError + location)
- Duplicate names, unknown-field preservation
- Interpolation syntax checks (never evaluated)
- Cache/service directives
- Matrix and parallelism expansion
"""

from __future__ import annotations

import textwrap

import pytest

from blockci.config import interpolation_problem, load_pipeline, parse, split_words
from blockci.errors import ConfigError
from blockci.model import AgentSpec, CacheRestore, CacheStore, Command, ServiceStart


MINIMAL = textwrap.dedent(
    """
    version: v1.0
    name: Minimal
    agent:
      machine:
        type: e1-standard-2
        os_image: ubuntu2204
    blocks:
      - name: Only
        task:
          jobs:
            - name: ok
              commands:
                - exit 0
    """
)

FULL = textwrap.dedent(
    """
    version: v1.0
    name: Rails CI
    agent:
      machine:
        type: e1-standard-2
        os_image: ubuntu2204
    auto_cancel:
      running:
        when: "true"
    blocks:
      - name: Code scanning
        task:
          jobs:
            - name: check style
              commands:
                - bundle exec rubocop
      - name: Unit tests
        agent:
          machine:
            type: e1-standard-4
            os_image: ubuntu2004
        execution_time_limit:
          minutes: 15
        task:
          env_vars:
            - name: RAILS_ENV
              value: test
          prologue:
            commands:
              - checkout
              - cache restore gems-$(checksum Gemfile.lock),gems
              - bundle install --path vendor/bundle
              - cache store gems-$(checksum Gemfile.lock) vendor/bundle
          epilogue:
            always:
              commands:
                - echo done
            on_fail:
              commands:
                - cat log/test.log
          jobs:
            - name: RSpec
              priority: 10
              commands:
                - sem-service start postgres 16
                - bundle exec rspec
    """
)


# ── Happy path ──────────────────────────────────────────────────────────────


def test_parse_minimal():
    pipeline = parse(MINIMAL)

    assert pipeline.version == "v1.0"
    assert pipeline.name == "Minimal"
    assert pipeline.agent == AgentSpec("e1-standard-2", "ubuntu2204")
    assert len(pipeline.blocks) == 1
    block = pipeline.blocks[0]
    assert block.name == "Only"
    assert [j.name for j in block.jobs] == ["ok"]
    assert block.jobs[0].commands == (Command("exit 0"),)


def test_parse_full_document():
    pipeline = parse(FULL)

    assert [b.name for b in pipeline.blocks] == ["Code scanning", "Unit tests"]
    unit = pipeline.blocks[1]
    assert unit.agent == AgentSpec("e1-standard-4", "ubuntu2004")
    assert unit.execution_time_limit == 15 * 60
    assert unit.env == {"RAILS_ENV": "test"}
    assert [c.run for c in unit.prologue.commands][0] == "checkout"
    assert [c.run for c in unit.epilogue.always] == ["echo done"]
    assert [c.run for c in unit.epilogue.on_fail] == ["cat log/test.log"]
    assert unit.epilogue.on_pass == ()


def test_parsing_is_idempotent():
    assert parse(FULL) == parse(FULL)
    assert parse(MINIMAL) == parse(MINIMAL)


def test_parse_accepts_mapping_and_bytes():
    import yaml

    assert parse(yaml.safe_load(MINIMAL)) == parse(MINIMAL)
    assert parse(MINIMAL.encode("utf-8")) == parse(MINIMAL)


def test_numeric_version_is_text():
    doc = MINIMAL.replace("version: v1.0", "version: 1.0")
    assert parse(doc).version == "1.0"


def test_os_image_next_to_machine():
    doc = {
        "version": "v1.0",
        "agent": {"machine": {"type": "e1-standard-2"}, "os_image": "ubuntu2404"},
        "blocks": [{"task": {"jobs": [{"name": "a", "commands": ["true"]}]}}],
    }
    pipeline = parse(doc)
    assert pipeline.agent == AgentSpec("e1-standard-2", "ubuntu2404")


def test_block_name_defaults_to_position():
    doc = {
        "version": "v1.0",
        "blocks": [
            {"task": {"jobs": [{"name": "a", "commands": ["true"]}]}},
            {"task": {"jobs": [{"name": "b", "commands": ["true"]}]}},
        ],
    }
    assert [b.name for b in parse(doc).blocks] == ["Block #1", "Block #2"]


def test_unknown_fields_are_preserved():
    pipeline = parse(FULL)

    assert pipeline.extras == {"auto_cancel": {"running": {"when": "true"}}}
    rspec = pipeline.blocks[1].jobs[0]
    assert rspec.extras == {"priority": 10}


def test_load_pipeline_from_file(tmp_path):
    path = tmp_path / "pipeline.yml"
    path.write_text(MINIMAL)
    assert load_pipeline(path) == parse(MINIMAL)


def test_load_pipeline_missing_file(tmp_path):
    with pytest.raises(ConfigError) as exc:
        load_pipeline(tmp_path / "nope.yml")
    assert "not found" in exc.value.reason


# ── Structural errors ───────────────────────────────────────────────────────


def _doc(**overrides):
    base = {
        "version": "v1.0",
        "agent": {"machine": {"type": "e1-standard-2", "os_image": "ubuntu2204"}},
        "blocks": [{"name": "B", "task": {"jobs": [{"name": "j", "commands": ["true"]}]}}],
    }
    base.update(overrides)
    return base


def test_missing_blocks_key():
    doc = _doc()
    del doc["blocks"]
    with pytest.raises(ConfigError) as exc:
        parse(doc)
    assert exc.value.location == "blocks"
    assert exc.value.reason == "missing required key"


def test_missing_version_key():
    doc = _doc()
    del doc["version"]
    with pytest.raises(ConfigError) as exc:
        parse(doc)
    assert exc.value.location == "version"


def test_empty_blocks_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[]))
    assert exc.value.location == "blocks"


def test_missing_jobs_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {}}]))
    assert exc.value.location == "blocks[0].task.jobs"


def test_empty_job_list_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": []}}]))
    assert exc.value.location == "blocks[0].task.jobs"


def test_empty_command_list_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": [{"name": "j", "commands": []}]}}]))
    assert exc.value.location == "blocks[0].task.jobs[0].commands"


@pytest.mark.parametrize("section", ["prologue", "epilogue"])
def test_empty_prologue_or_epilogue_commands_rejected(section):
    doc = {"commands": []} if section == "prologue" else {"always": {"commands": []}}
    task = {section: doc, "jobs": [{"name": "j", "commands": ["true"]}]}
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": task}]))
    expected = "prologue.commands" if section == "prologue" else "epilogue.always.commands"
    assert exc.value.location == f"blocks[0].task.{expected}"


def test_blank_command_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": [{"name": "j", "commands": ["echo", "  "]}]}}]))
    assert exc.value.location == "blocks[0].task.jobs[0].commands[1]"


def test_non_string_command_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": [{"name": "j", "commands": [42]}]}}]))
    assert exc.value.location == "blocks[0].task.jobs[0].commands[0]"


def test_malformed_structure_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks={"name": "not a list"}))
    assert exc.value.location.startswith("blocks")


def test_duplicate_job_names_rejected():
    jobs = [{"name": "same", "commands": ["true"]}, {"name": "same", "commands": ["false"]}]
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}]))
    assert exc.value.location == "blocks[0].task.jobs[1].name"
    assert "duplicate job name" in exc.value.reason


def test_same_job_name_in_different_blocks_is_fine():
    blocks = [
        {"name": "A", "task": {"jobs": [{"name": "test", "commands": ["true"]}]}},
        {"name": "B", "task": {"jobs": [{"name": "test", "commands": ["true"]}]}},
    ]
    assert len(parse(_doc(blocks=blocks)).blocks) == 2


def test_duplicate_block_names_rejected():
    block = {"name": "Same", "task": {"jobs": [{"name": "j", "commands": ["true"]}]}}
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[block, block]))
    assert exc.value.location == "blocks[1].name"


def test_invalid_yaml_reports_line():
    with pytest.raises(ConfigError) as exc:
        parse("version: v1.0\nblocks: [\n")
    assert exc.value.location.startswith("line ")


def test_non_mapping_document_rejected():
    with pytest.raises(ConfigError):
        parse("- just\n- a list\n")


def test_empty_document_rejected():
    with pytest.raises(ConfigError):
        parse("")


def test_bad_time_limit_rejected():
    with pytest.raises(ConfigError) as exc:
        parse(_doc(execution_time_limit={}))
    assert exc.value.location == "execution_time_limit"


# ── Interpolation ───────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "text",
    [
        "echo $HOME",
        "echo ${HOME}",
        "echo ${RAILS_ENV:-test}",
        "echo ${A:-${B}}",
        "echo ${#PATH}",
        "echo ${!BLOCKCI_*}",
        "for v in ${!RAILS_@}; do echo $v; done",
        "echo ${1}",
        "echo $(date +%s)",
        "echo $$",
        "echo no variables here",
    ],
)
def test_valid_interpolation(text):
    assert interpolation_problem(text) is None


@pytest.mark.parametrize(
    "text,fragment",
    [
        ("echo ${HOME", "unterminated"),
        ("echo ${}", "empty"),
        ("echo ${1abc}", "invalid variable reference"),
        ("echo ${FOO BAR}", "invalid variable reference"),
    ],
)
def test_invalid_interpolation(text, fragment):
    assert fragment in interpolation_problem(text)


def test_invalid_interpolation_in_command_is_config_error():
    jobs = [{"name": "j", "commands": ["echo ok", "echo ${BROKEN"]}]
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}]))
    assert exc.value.location == "blocks[0].task.jobs[0].commands[1]"
    assert "interpolation" in exc.value.reason


def test_invalid_interpolation_in_env_var_is_config_error():
    task = {
        "env_vars": [{"name": "X", "value": "${}"}],
        "jobs": [{"name": "j", "commands": ["true"]}],
    }
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": task}]))
    assert exc.value.location == "blocks[0].task.env_vars[0].value"


def test_interpolation_is_not_evaluated():
    jobs = [{"name": "j", "commands": ["echo ${HOME}"]}]
    pipeline = parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}]))
    assert pipeline.blocks[0].jobs[0].commands[0].run == "echo ${HOME}"


# ── Directives ──────────────────────────────────────────────────────────────


def test_cache_and_service_directives():
    unit = parse(FULL).blocks[1]
    prologue = unit.prologue.commands

    assert prologue[0].directive is None
    assert prologue[1].directive == CacheRestore(keys=("gems-$(checksum Gemfile.lock)", "gems"))
    assert prologue[2].directive is None
    assert prologue[3].directive == CacheStore(key="gems-$(checksum Gemfile.lock)", path="vendor/bundle")
    assert unit.jobs[0].commands[0].directive == ServiceStart(name="postgres", params=("16",))


def test_bare_cache_commands_are_directives():
    jobs = [{"name": "j", "commands": ["cache restore", "cache store"]}]
    cmds = parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}])).blocks[0].jobs[0].commands
    assert cmds[0].directive == CacheRestore()
    assert cmds[1].directive == CacheStore()


def test_cache_command_with_shell_operators_stays_opaque():
    jobs = [{"name": "j", "commands": ["cache restore key && echo restored"]}]
    cmd = parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}])).blocks[0].jobs[0].commands[0]
    assert cmd.directive is None


def test_cache_store_with_one_argument_rejected():
    jobs = [{"name": "j", "commands": ["cache store only-key"]}]
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}]))
    assert exc.value.location == "blocks[0].task.jobs[0].commands[0]"


def test_service_start_without_name_rejected():
    jobs = [{"name": "j", "commands": ["sem-service start"]}]
    with pytest.raises(ConfigError):
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}]))


def test_split_words_keeps_substitutions_together():
    assert split_words("cache store k-$(sha256sum a b | cut -c1-8) dir") == [
        "cache", "store", "k-$(sha256sum a b | cut -c1-8)", "dir",
    ]
    assert split_words("echo 'a b' \"c d\"") == ["echo", "'a b'", '"c d"']
    assert split_words("make && make test") is None


# ── Matrix / parallelism ────────────────────────────────────────────────────


def test_matrix_expansion():
    job = {
        "name": "Tests",
        "commands": ["make test"],
        "env_vars": [{"name": "CI_FLAG", "value": 1}],
        "matrix": [
            {"env_var": "RUBY", "values": ["3.2", "3.3"]},
            {"env_var": "DB", "values": ["pg", "mysql"]},
        ],
    }
    jobs = parse(_doc(blocks=[{"name": "B", "task": {"jobs": [job]}}])).blocks[0].jobs

    assert [j.name for j in jobs] == [
        "Tests - RUBY=3.2, DB=pg",
        "Tests - RUBY=3.2, DB=mysql",
        "Tests - RUBY=3.3, DB=pg",
        "Tests - RUBY=3.3, DB=mysql",
    ]
    assert jobs[1].env == {"CI_FLAG": "1", "RUBY": "3.2", "DB": "mysql"}


def test_parallelism_expansion():
    job = {"name": "Shard", "commands": ["make test"], "parallelism": 3}
    jobs = parse(_doc(blocks=[{"name": "B", "task": {"jobs": [job]}}])).blocks[0].jobs

    assert [j.name for j in jobs] == ["Shard - 1/3", "Shard - 2/3", "Shard - 3/3"]
    assert jobs[2].env == {"BLOCKCI_JOB_INDEX": "3", "BLOCKCI_JOB_COUNT": "3"}


def test_matrix_and_parallelism_together_rejected():
    job = {
        "name": "x",
        "commands": ["true"],
        "parallelism": 2,
        "matrix": [{"env_var": "A", "values": [1]}],
    }
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": [job]}}]))
    assert exc.value.location == "blocks[0].task.jobs[0]"


def test_expansion_collision_rejected():
    jobs = [
        {"name": "T", "commands": ["true"], "parallelism": 2},
        {"name": "T - 1/2", "commands": ["true"]},
    ]
    with pytest.raises(ConfigError) as exc:
        parse(_doc(blocks=[{"name": "B", "task": {"jobs": jobs}}]))
    assert "after expansion" in exc.value.reason
