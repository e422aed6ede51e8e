"""Tests for the tool table.

The supervisor and REST client are replaced with AsyncMocks so only the
tool layer is exercised. Verifies that:
- each autorun tool builds the expected command sequence
- results are wrapped as {success, jobId, ...} JSON
- bad arguments and failures come back as isError results
- solibri_status tolerates individual REST failures
- the table is fixed and every tool is documented
"""

import json
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from autorun import AutorunFailed, AutorunResult, AutorunTimeout, Command, CommandType
from config import Config
from rest_client import SolibriApiError, SolibriTimeout, SolibriUnreachable
from tools import build_tools

EXPECTED_TOOLS = {
    "solibri_list_assets",
    "solibri_check_model",
    "solibri_quantity_takeoff",
    "solibri_create_model",
    "solibri_update_model",
    "solibri_autorun",
    "solibri_status",
    "solibri_select_components",
    "solibri_get_selection",
    "solibri_component_info",
    "solibri_get_bcf",
    "solibri_wait_until_idle",
}


def make_supervisor(stdout=""):
    supervisor = MagicMock()
    supervisor.execute = AsyncMock(return_value=AutorunResult("job-1", 0, stdout, ""))
    return supervisor


def make_rest():
    rest = MagicMock()
    for name in ("ping", "about", "status", "set_selection_basket", "get_selection_basket",
                 "get_component_info", "get_bcf", "wait_until_idle"):
        setattr(rest, name, AsyncMock(return_value=None))
    return rest


def make_tools(supervisor=None, rest=None, config=None):
    return build_tools(supervisor or make_supervisor(), rest or make_rest(), config or Config(auth_token="t"))


async def call(tools, name, arguments):
    result = await tools[name].invoke(arguments)
    text = result.content[0].text
    if result.is_error:
        return result, text
    return result, json.loads(text)


def executed_commands(supervisor) -> list[Command]:
    return list(supervisor.execute.call_args.args[0])


# ============================================================
# Table
# ============================================================


class TestTable:
    def test_tool_names(self):
        """The table holds exactly the Solibri tools."""
        assert set(make_tools()) == EXPECTED_TOOLS

    def test_table_is_read_only(self):
        """The table can't be modified after construction."""
        tools = make_tools()
        with pytest.raises(TypeError):
            tools["extra"] = tools["solibri_status"]

    def test_descriptions_loaded(self):
        """Every tool has a description from docs/tool-descriptions."""
        for tool in make_tools().values():
            assert tool.description
            assert tool.description == tool.description.strip()

    def test_schemas_use_wire_names(self):
        """Input schemas use camelCase argument names and mark required ones."""
        schema = make_tools()["solibri_check_model"].input_schema()
        assert set(schema["properties"]) == {"modelPath", "rulesets", "classifications", "outputBcf", "outputSmc"}
        assert set(schema["required"]) == {"modelPath", "rulesets"}


# ============================================================
# Autorun tools
# ============================================================


class TestCheckModel:
    @pytest.mark.asyncio
    async def test_full_sequence(self):
        """Model, classifications, rulesets, check, BCF, save, exit, in that order."""
        supervisor = make_supervisor()
        result, data = await call(make_tools(supervisor), "solibri_check_model", {
            "modelPath": "C:\\m\\a.ifc",
            "rulesets": ["r1.cset", "r2.cset"],
            "classifications": ["c.classification"],
            "outputBcf": "out.bcf",
            "outputSmc": "out.smc",
        })
        assert not result.is_error
        assert executed_commands(supervisor) == [
            Command(CommandType.OPENMODEL, file="C:\\m\\a.ifc"),
            Command(CommandType.OPENCLASSIFICATION, file="c.classification"),
            Command(CommandType.OPENRULESET, file="r1.cset"),
            Command(CommandType.OPENRULESET, file="r2.cset"),
            Command(CommandType.CHECK),
            Command(CommandType.BCFREPORT, file="out.bcf", version="2.1"),
            Command(CommandType.SAVEMODEL, file="out.smc"),
            Command(CommandType.EXIT),
        ]
        assert data == {
            "success": True,
            "jobId": "job-1",
            "outputBcf": "out.bcf",
            "outputSmc": "out.smc",
            "message": "Model check completed",
        }

    @pytest.mark.asyncio
    async def test_minimal(self):
        """Without outputs there is no bcfreport or savemodel."""
        supervisor = make_supervisor()
        await call(make_tools(supervisor), "solibri_check_model", {"modelPath": "a.ifc", "rulesets": ["r.cset"]})
        assert [c.type for c in executed_commands(supervisor)] == [
            CommandType.OPENMODEL, CommandType.OPENRULESET, CommandType.CHECK, CommandType.EXIT,
        ]

    @pytest.mark.asyncio
    async def test_missing_required_argument(self):
        """A missing modelPath is an isError result and nothing runs."""
        supervisor = make_supervisor()
        result, text = await call(make_tools(supervisor), "solibri_check_model", {"rulesets": []})
        assert result.is_error
        assert "Invalid arguments for solibri_check_model" in text
        assert "modelPath" in text
        supervisor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_argument(self):
        """Unknown arguments are rejected."""
        result, _ = await call(make_tools(), "solibri_check_model",
                               {"modelPath": "a.ifc", "rulesets": [], "bogus": 1})
        assert result.is_error

    @pytest.mark.asyncio
    async def test_timeout_reported(self):
        """A timed-out run comes back as an error envelope."""
        supervisor = make_supervisor()
        supervisor.execute.side_effect = AutorunTimeout(5)
        result, text = await call(make_tools(supervisor), "solibri_check_model",
                                  {"modelPath": "a.ifc", "rulesets": []})
        assert result.is_error
        assert text == "Error: Autorun timed out after 5s"

    @pytest.mark.asyncio
    async def test_failure_reported(self):
        """A failed run reports exit code and output."""
        supervisor = make_supervisor()
        supervisor.execute.side_effect = AutorunFailed(1, "no license")
        result, text = await call(make_tools(supervisor), "solibri_check_model",
                                  {"modelPath": "a.ifc", "rulesets": []})
        assert result.is_error
        assert text == "Error: Autorun exited with code 1: no license"


class TestQuantityTakeoff:
    @pytest.mark.asyncio
    async def test_sequence(self):
        """ITO takeoff runs the named ITO and writes the report with template and title."""
        supervisor = make_supervisor()
        _, data = await call(make_tools(supervisor), "solibri_quantity_takeoff", {
            "modelPath": "a.ifc", "itoFile": "q.ito", "outputExcel": "q.xlsx",
            "templateFile": "t.xlsx", "itoName": "Walls", "title": "Wall areas",
        })
        assert executed_commands(supervisor) == [
            Command(CommandType.OPENMODEL, file="a.ifc"),
            Command(CommandType.OPENITO, file="q.ito"),
            Command(CommandType.TAKEOFF, name="Walls"),
            Command(CommandType.ITOREPORT, file="q.xlsx", templatefile="t.xlsx", title="Wall areas", name="Walls"),
            Command(CommandType.EXIT),
        ]
        assert data["outputExcel"] == "q.xlsx"

    @pytest.mark.asyncio
    async def test_all_itos(self):
        """Without itoName the takeoff and report carry no name."""
        supervisor = make_supervisor()
        await call(make_tools(supervisor), "solibri_quantity_takeoff",
                   {"modelPath": "a.ifc", "itoFile": "q.ito", "outputExcel": "q.xlsx"})
        commands = executed_commands(supervisor)
        assert commands[2] == Command(CommandType.TAKEOFF)
        assert commands[3] == Command(CommandType.ITOREPORT, file="q.xlsx")


class TestModelManagement:
    @pytest.mark.asyncio
    async def test_create_model(self):
        """All IFC files are opened, then classifications, then the model is saved."""
        supervisor = make_supervisor()
        _, data = await call(make_tools(supervisor), "solibri_create_model", {
            "ifcFiles": ["arch.ifc", "struct.ifc"], "outputSmc": "combined.smc",
            "classifications": ["c.classification"],
        })
        assert executed_commands(supervisor) == [
            Command(CommandType.OPENMODEL, file="arch.ifc"),
            Command(CommandType.OPENMODEL, file="struct.ifc"),
            Command(CommandType.OPENCLASSIFICATION, file="c.classification"),
            Command(CommandType.SAVEMODEL, file="combined.smc"),
            Command(CommandType.EXIT),
        ]
        assert data["ifcCount"] == 2
        assert data["outputSmc"] == "combined.smc"

    @pytest.mark.asyncio
    async def test_create_model_needs_files(self):
        """An empty ifcFiles list is rejected."""
        result, _ = await call(make_tools(), "solibri_create_model", {"ifcFiles": [], "outputSmc": "x.smc"})
        assert result.is_error

    @pytest.mark.asyncio
    async def test_update_model_defaults_to_input(self):
        """Without outputSmc the input model is overwritten."""
        supervisor = make_supervisor()
        _, data = await call(make_tools(supervisor), "solibri_update_model",
                             {"smcPath": "m.smc", "ifcFiles": ["new.ifc"]})
        assert executed_commands(supervisor) == [
            Command(CommandType.OPENMODEL, file="m.smc"),
            Command(CommandType.UPDATEMODEL, file="new.ifc"),
            Command(CommandType.SAVEMODEL, file="m.smc"),
            Command(CommandType.EXIT),
        ]
        assert data["outputSmc"] == "m.smc"
        assert data["updatedFiles"] == 1


class TestRawAutorun:
    @pytest.mark.asyncio
    async def test_passes_commands_and_returns_stdout(self):
        """Raw commands are parsed, unknown types dropped, stdout returned."""
        supervisor = make_supervisor(stdout="Solibri done\n")
        _, data = await call(make_tools(supervisor), "solibri_autorun", {"commands": [
            {"type": "openmodel", "file": "a.ifc"},
            {"type": "dance"},
            {"type": "autocomment", "snapshots": True},
            {"type": "exit"},
        ]})
        assert executed_commands(supervisor) == [
            Command(CommandType.OPENMODEL, file="a.ifc"),
            Command(CommandType.AUTOCOMMENT, snapshots=True),
            Command(CommandType.EXIT),
        ]
        assert supervisor.execute.call_args.kwargs == {"enable_rest_api": False}
        assert data == {"success": True, "jobId": "job-1", "stdout": "Solibri done\n"}

    @pytest.mark.asyncio
    async def test_enable_rest_api(self):
        """enableRestApi is forwarded to the supervisor."""
        supervisor = make_supervisor()
        await call(make_tools(supervisor), "solibri_autorun",
                   {"commands": [{"type": "exit"}], "enableRestApi": True})
        assert supervisor.execute.call_args.kwargs == {"enable_rest_api": True}

    @pytest.mark.asyncio
    async def test_nothing_valid(self):
        """Only unknown commands is an error, and nothing runs."""
        supervisor = make_supervisor()
        result, text = await call(make_tools(supervisor), "solibri_autorun", {"commands": [{"type": "dance"}]})
        assert result.is_error
        assert "No valid autorun commands" in text
        supervisor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_command(self):
        """A known command missing its file is an error."""
        result, text = await call(make_tools(), "solibri_autorun", {"commands": [{"type": "savemodel"}]})
        assert result.is_error
        assert "requires 'file'" in text


class TestListAssets:
    @pytest.mark.asyncio
    async def test_lists_rulesets(self, tmp_path):
        """solibri_list_assets returns assets and count."""
        (tmp_path / "BIM.cset").write_text("x")
        config = Config(auth_token="t", rulesets_dir=str(tmp_path))
        _, data = await call(make_tools(config=config), "solibri_list_assets", {"type": "rulesets"})
        assert data == {
            "type": "rulesets",
            "assets": [{"name": "BIM.cset", "path": os.path.join(str(tmp_path), "BIM.cset")}],
            "count": 1,
        }

    @pytest.mark.asyncio
    async def test_invalid_type(self):
        """An unknown asset type is rejected by validation."""
        result, _ = await call(make_tools(), "solibri_list_assets", {"type": "textures"})
        assert result.is_error


# ============================================================
# REST tools
# ============================================================


class TestStatus:
    @pytest.mark.asyncio
    async def test_running(self):
        """All three calls succeed."""
        rest = make_rest()
        rest.ping.return_value = "pong"
        rest.about.return_value = {"version": "9.13"}
        rest.status.return_value = {"busy": False}
        _, data = await call(make_tools(rest=rest), "solibri_status", {})
        assert data == {"running": True, "about": {"version": "9.13"}, "status": {"busy": False}}

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        """A failing call becomes null without aborting the others."""
        rest = make_rest()
        rest.ping.return_value = "pong"
        rest.about.side_effect = SolibriApiError(500, "oops")
        rest.status.return_value = {"busy": True}
        result, data = await call(make_tools(rest=rest), "solibri_status", {})
        assert not result.is_error
        assert data == {"running": True, "about": None, "status": {"busy": True}}

    @pytest.mark.asyncio
    async def test_not_running(self):
        """Unreachable Solibri reports running false with a hint."""
        rest = make_rest()
        for name in ("ping", "about", "status"):
            getattr(rest, name).side_effect = SolibriUnreachable()
        result, data = await call(make_tools(rest=rest), "solibri_status", {})
        assert not result.is_error
        assert data["running"] is False
        assert data["about"] is None and data["status"] is None
        assert "--rest-api-server-port" in data["hint"]


class TestSelectionAndBcf:
    @pytest.mark.asyncio
    async def test_select_components(self):
        """GUIDs are sent to the selection basket."""
        rest = make_rest()
        _, data = await call(make_tools(rest=rest), "solibri_select_components", {"guids": ["g1", "g2"]})
        rest.set_selection_basket.assert_awaited_once_with(["g1", "g2"])
        assert data == {"success": True, "selectedCount": 2}

    @pytest.mark.asyncio
    async def test_select_unreachable(self):
        """Unreachable Solibri is an error envelope with the hint."""
        rest = make_rest()
        rest.set_selection_basket.side_effect = SolibriUnreachable()
        result, text = await call(make_tools(rest=rest), "solibri_select_components", {"guids": ["g1"]})
        assert result.is_error
        assert "--rest-api-server-port" in text

    @pytest.mark.asyncio
    async def test_get_selection(self):
        """The selection basket is returned as-is."""
        rest = make_rest()
        rest.get_selection_basket.return_value = [{"guid": "g1"}]
        _, data = await call(make_tools(rest=rest), "solibri_get_selection", {})
        assert data == {"success": True, "selection": [{"guid": "g1"}]}

    @pytest.mark.asyncio
    async def test_component_info(self):
        """Component info is fetched by GUID."""
        rest = make_rest()
        rest.get_component_info.return_value = {"name": "Wall"}
        _, data = await call(make_tools(rest=rest), "solibri_component_info", {"guid": "g1"})
        rest.get_component_info.assert_awaited_once_with("g1")
        assert data["info"] == {"name": "Wall"}

    @pytest.mark.asyncio
    async def test_get_bcf_default_version(self):
        """BCF defaults to version 2.1."""
        rest = make_rest()
        rest.get_bcf.return_value = "<bcf/>"
        _, data = await call(make_tools(rest=rest), "solibri_get_bcf", {})
        rest.get_bcf.assert_awaited_once_with("2.1")
        assert data == {"success": True, "bcfVersion": "2.1", "data": "<bcf/>"}

    @pytest.mark.asyncio
    async def test_get_bcf_bad_version(self):
        """Only BCF 2 and 2.1 are accepted."""
        result, _ = await call(make_tools(), "solibri_get_bcf", {"version": "3.0"})
        assert result.is_error


class TestWaitUntilIdle:
    @pytest.mark.asyncio
    async def test_defaults(self):
        """Defaults are 60s timeout and 1s polling."""
        rest = make_rest()
        _, data = await call(make_tools(rest=rest), "solibri_wait_until_idle", {})
        rest.wait_until_idle.assert_awaited_once_with(60.0, 1.0)
        assert data == {"success": True, "idle": True}

    @pytest.mark.asyncio
    async def test_timeout_is_error(self):
        """Staying busy is reported as an error envelope."""
        rest = make_rest()
        rest.wait_until_idle.side_effect = SolibriTimeout("Solibri did not become idle within 5s")
        result, text = await call(make_tools(rest=rest), "solibri_wait_until_idle",
                                  {"timeout": 5, "pollInterval": 0.5})
        assert result.is_error
        assert text == "Error: Solibri did not become idle within 5s"

    @pytest.mark.asyncio
    async def test_rejects_nonpositive(self):
        """Timeout must be positive."""
        result, _ = await call(make_tools(), "solibri_wait_until_idle", {"timeout": 0})
        assert result.is_error
