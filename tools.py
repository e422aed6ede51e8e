"""Solibri MCP tools.

A fixed table of tool name -> (argument model, handler). Handlers either
build an autorun script and run it through the supervisor, or call the
REST API of an already running Solibri. Tool.invoke() is the error
boundary: whatever goes wrong comes back as an isError result, never as an
exception.
"""

import asyncio
import json
import logging
import os
import types as pytypes
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from mcp import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autorun import Command, CommandType, list_assets, parse_commands

logger = logging.getLogger("solibri.tools")

_TOOL_DESC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "docs", "tool-descriptions")


def _load_tool_desc(tool_name: str) -> str:
    """Load tool description from markdown file."""
    with open(os.path.join(_TOOL_DESC_DIR, f"{tool_name}.md"), "r", encoding="utf-8") as f:
        return f.read().strip()


def text_result(payload) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=json.dumps(payload, indent=2))],
        is_error=False,
    )


def error_result(message: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=f"Error: {message}")],
        is_error=True,
    )


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    arguments: type[BaseModel]
    handler: Callable[[BaseModel], Awaitable[dict]]

    def input_schema(self) -> dict:
        return self.arguments.model_json_schema(by_alias=True)

    async def invoke(self, arguments) -> types.CallToolResult:
        try:
            args = self.arguments.model_validate(arguments)
        except ValidationError as e:
            return error_result(f"Invalid arguments for {self.name}: {e}")
        try:
            payload = await self.handler(args)
        except Exception as e:
            logger.warning("%s failed: %s", self.name, e)
            return error_result(str(e))
        return text_result(payload)


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=(), extra="forbid")


class NoArgs(_Args):
    pass


class ListAssetsArgs(_Args):
    type: Literal["classifications", "rulesets", "ito", "templates"] = Field(
        description="Type of assets to list")


class CheckModelArgs(_Args):
    model_path: str = Field(alias="modelPath", description="Path to IFC or SMC file")
    rulesets: list[str] = Field(description="List of ruleset files to apply")
    classifications: list[str] = Field(default_factory=list,
                                       description="List of classification files to apply (optional)")
    output_bcf: str | None = Field(None, alias="outputBcf", description="Path for BCF output file (optional)")
    output_smc: str | None = Field(None, alias="outputSmc", description="Path to save SMC model (optional)")


class QuantityTakeoffArgs(_Args):
    model_path: str = Field(alias="modelPath", description="Path to IFC or SMC file")
    ito_file: str = Field(alias="itoFile", description="Path to ITO definition file")
    output_excel: str = Field(alias="outputExcel", description="Path for Excel output file")
    template_file: str | None = Field(None, alias="templateFile", description="Excel template file (optional)")
    ito_name: str | None = Field(None, alias="itoName",
                                 description="Specific ITO name to run (optional, runs all if not specified)")
    title: str | None = Field(None, description="Report title (optional)")


class CreateModelArgs(_Args):
    ifc_files: list[str] = Field(alias="ifcFiles", min_length=1, description="List of IFC file paths to combine")
    output_smc: str = Field(alias="outputSmc", description="Path for output SMC file")
    classifications: list[str] = Field(default_factory=list,
                                       description="Classification files to apply (optional)")


class UpdateModelArgs(_Args):
    smc_path: str = Field(alias="smcPath", description="Path to existing SMC file")
    ifc_files: list[str] = Field(alias="ifcFiles", description="IFC files to update/add")
    output_smc: str | None = Field(None, alias="outputSmc",
                                   description="Path for output SMC file (can be same as input)")


class RawCommand(BaseModel):
    type: str
    file: str | None = None
    name: str | None = None
    templatefile: str | None = None
    title: str | None = None
    version: str | None = None
    snapshots: bool | int | None = None


class AutorunArgs(_Args):
    commands: list[RawCommand] = Field(description="Array of Autorun commands")
    enable_rest_api: bool = Field(False, alias="enableRestApi",
                                  description="Also start Solibri's REST API on the configured port")


class SelectComponentsArgs(_Args):
    guids: list[str] = Field(description="IFC GUIDs to select")


class ComponentInfoArgs(_Args):
    guid: str = Field(description="IFC GUID of the component")


class GetBcfArgs(_Args):
    version: Literal["2", "2.1"] = Field("2.1", description="BCF version")


class WaitUntilIdleArgs(_Args):
    timeout: float = Field(60.0, gt=0, description="Seconds to wait before giving up")
    poll_interval: float = Field(1.0, gt=0, alias="pollInterval", description="Seconds between status polls")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class SolibriTools:
    def __init__(self, supervisor, rest, config):
        self.supervisor = supervisor
        self.rest = rest
        self.config = config

    async def list_assets(self, args: ListAssetsArgs) -> dict:
        assets = list_assets(args.type, self.config)
        return {"type": args.type, "assets": assets, "count": len(assets)}

    async def check_model(self, args: CheckModelArgs) -> dict:
        commands = [Command(CommandType.OPENMODEL, file=args.model_path)]
        commands += [Command(CommandType.OPENCLASSIFICATION, file=c) for c in args.classifications]
        commands += [Command(CommandType.OPENRULESET, file=r) for r in args.rulesets]
        commands.append(Command(CommandType.CHECK))
        if args.output_bcf:
            commands.append(Command(CommandType.BCFREPORT, file=args.output_bcf, version="2.1"))
        if args.output_smc:
            commands.append(Command(CommandType.SAVEMODEL, file=args.output_smc))
        commands.append(Command(CommandType.EXIT))

        result = await self.supervisor.execute(commands)
        return {
            "success": True,
            "jobId": result.job_id,
            "outputBcf": args.output_bcf,
            "outputSmc": args.output_smc,
            "message": "Model check completed",
        }

    async def quantity_takeoff(self, args: QuantityTakeoffArgs) -> dict:
        commands = [
            Command(CommandType.OPENMODEL, file=args.model_path),
            Command(CommandType.OPENITO, file=args.ito_file),
            Command(CommandType.TAKEOFF, name=args.ito_name),
            Command(CommandType.ITOREPORT, file=args.output_excel, templatefile=args.template_file,
                    title=args.title, name=args.ito_name),
            Command(CommandType.EXIT),
        ]
        result = await self.supervisor.execute(commands)
        return {
            "success": True,
            "jobId": result.job_id,
            "outputExcel": args.output_excel,
            "message": "Quantity takeoff completed",
        }

    async def create_model(self, args: CreateModelArgs) -> dict:
        commands = [Command(CommandType.OPENMODEL, file=f) for f in args.ifc_files]
        commands += [Command(CommandType.OPENCLASSIFICATION, file=c) for c in args.classifications]
        commands.append(Command(CommandType.SAVEMODEL, file=args.output_smc))
        commands.append(Command(CommandType.EXIT))

        result = await self.supervisor.execute(commands)
        return {
            "success": True,
            "jobId": result.job_id,
            "outputSmc": args.output_smc,
            "ifcCount": len(args.ifc_files),
            "message": "Model created successfully",
        }

    async def update_model(self, args: UpdateModelArgs) -> dict:
        output_smc = args.output_smc or args.smc_path
        commands = [Command(CommandType.OPENMODEL, file=args.smc_path)]
        commands += [Command(CommandType.UPDATEMODEL, file=f) for f in args.ifc_files]
        commands.append(Command(CommandType.SAVEMODEL, file=output_smc))
        commands.append(Command(CommandType.EXIT))

        result = await self.supervisor.execute(commands)
        return {
            "success": True,
            "jobId": result.job_id,
            "outputSmc": output_smc,
            "updatedFiles": len(args.ifc_files),
            "message": "Model updated successfully",
        }

    async def autorun(self, args: AutorunArgs) -> dict:
        commands = parse_commands(c.model_dump(exclude_none=True) for c in args.commands)
        if not commands:
            raise ValueError("No valid autorun commands given")
        result = await self.supervisor.execute(commands, enable_rest_api=args.enable_rest_api)
        return {"success": True, "jobId": result.job_id, "stdout": result.stdout}

    async def status(self, args: NoArgs) -> dict:
        ping, about, status = await asyncio.gather(
            self.rest.ping(), self.rest.about(), self.rest.status(),
            return_exceptions=True,
        )
        for name, value in (("ping", ping), ("about", about), ("status", status)):
            if isinstance(value, Exception):
                logger.debug("status: %s failed: %s", name, value)
        result = {
            "running": not isinstance(ping, Exception),
            "about": None if isinstance(about, Exception) else about,
            "status": None if isinstance(status, Exception) else status,
        }
        if not result["running"]:
            result["hint"] = "Start Solibri with --rest-api-server-port flag"
        return result

    async def select_components(self, args: SelectComponentsArgs) -> dict:
        await self.rest.set_selection_basket(args.guids)
        return {"success": True, "selectedCount": len(args.guids)}

    async def get_selection(self, args: NoArgs) -> dict:
        return {"success": True, "selection": await self.rest.get_selection_basket()}

    async def component_info(self, args: ComponentInfoArgs) -> dict:
        return {"success": True, "guid": args.guid, "info": await self.rest.get_component_info(args.guid)}

    async def get_bcf(self, args: GetBcfArgs) -> dict:
        bcf = await self.rest.get_bcf(args.version)
        return {"success": True, "bcfVersion": args.version, "data": bcf}

    async def wait_until_idle(self, args: WaitUntilIdleArgs) -> dict:
        await self.rest.wait_until_idle(args.timeout, args.poll_interval)
        return {"success": True, "idle": True}


def build_tools(supervisor, rest, config):
    """Build the read-only tool table."""
    handlers = SolibriTools(supervisor, rest, config)
    table = [
        ("solibri_list_assets", ListAssetsArgs, handlers.list_assets),
        ("solibri_check_model", CheckModelArgs, handlers.check_model),
        ("solibri_quantity_takeoff", QuantityTakeoffArgs, handlers.quantity_takeoff),
        ("solibri_create_model", CreateModelArgs, handlers.create_model),
        ("solibri_update_model", UpdateModelArgs, handlers.update_model),
        ("solibri_autorun", AutorunArgs, handlers.autorun),
        ("solibri_status", NoArgs, handlers.status),
        ("solibri_select_components", SelectComponentsArgs, handlers.select_components),
        ("solibri_get_selection", NoArgs, handlers.get_selection),
        ("solibri_component_info", ComponentInfoArgs, handlers.component_info),
        ("solibri_get_bcf", GetBcfArgs, handlers.get_bcf),
        ("solibri_wait_until_idle", WaitUntilIdleArgs, handlers.wait_until_idle),
    ]
    return pytypes.MappingProxyType({
        name: Tool(name, _load_tool_desc(name), model, handler)
        for name, model, handler in table
    })
