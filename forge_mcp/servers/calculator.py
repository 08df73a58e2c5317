"""
Calculator MCP Tool Server.

Reference server used by the CLI defaults and the integration tests.
Runs as a subprocess and speaks MCP over stdin/stdout.

Launch:
    python -m forge_mcp.servers.calculator

Try it by hand:
    echo '{"jsonrpc":"2.0","method":"tools/call","params":{"name":"add","arguments":{"a":2,"b":3}},"id":1}' \
        | python -m forge_mcp.servers.calculator
"""

import ast
import math
import operator
import os
import sys

# Add project root to path so imports work when run as subprocess
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from forge_mcp.server import StdioToolServer, ToolHandler, configure_server_logging


def _require_number(params: dict, key: str) -> float:
    value = params.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number, got {value!r}")
    return value


class AddTool(ToolHandler):
    name = "add"
    description = "Add two numbers."
    parameters = {
        "a": {"type": "number", "description": "First addend"},
        "b": {"type": "number", "description": "Second addend"},
    }
    required = ["a", "b"]

    def handle(self, params: dict) -> dict:
        a, b = params.get("a"), params.get("b")
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (a, b)):
            raise ValueError(f"add expects numbers, got a={a!r}, b={b!r}")
        return {"a": a, "b": b, "result": a + b}


class CalculateTool(ToolHandler):
    name = "calculate"
    description = (
        "Evaluate an arithmetic expression. Supports + - * / // % **, parentheses, "
        "sqrt, log, log10, sin, cos, tan, abs, round, and the constants pi and e."
    )
    parameters = {
        "expression": {
            "type": "string",
            "description": "Expression to evaluate, e.g. 'sqrt(2) * pi / 3'",
        },
    }
    required = ["expression"]

    _binary = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.Pow: operator.pow,
    }
    _unary = {ast.UAdd: operator.pos, ast.USub: operator.neg}
    _functions = {
        "sqrt": math.sqrt,
        "log": math.log,
        "log10": math.log10,
        "sin": math.sin,
        "cos": math.cos,
        "tan": math.tan,
        "abs": abs,
        "round": round,
    }
    _constants = {"pi": math.pi, "e": math.e}

    def handle(self, params: dict) -> dict:
        expression = str(params.get("expression", "")).strip()
        if not expression:
            raise ValueError("No expression provided")

        try:
            tree = ast.parse(expression, mode="eval")
            result = self._evaluate(tree.body)
        except (SyntaxError, ValueError, TypeError, ArithmeticError) as e:
            return {"expression": expression, "error": str(e)}
        return {"expression": expression, "result": result}

    def _evaluate(self, node: ast.AST) -> float:
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
                and not isinstance(node.value, bool):
            return node.value
        if isinstance(node, ast.Name) and node.id in self._constants:
            return self._constants[node.id]
        if isinstance(node, ast.BinOp) and type(node.op) in self._binary:
            return self._binary[type(node.op)](self._evaluate(node.left), self._evaluate(node.right))
        if isinstance(node, ast.UnaryOp) and type(node.op) in self._unary:
            return self._unary[type(node.op)](self._evaluate(node.operand))
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) \
                and node.func.id in self._functions and not node.keywords:
            return self._functions[node.func.id](*(self._evaluate(arg) for arg in node.args))
        raise ValueError(f"Unsupported expression element: {ast.dump(node)[:60]}")


class ConvertUnitsTool(ToolHandler):
    name = "convert_units"
    description = "Convert a value between units of length, mass or temperature."
    parameters = {
        "value": {"type": "number", "description": "The value to convert"},
        "from_unit": {"type": "string", "description": "Source unit, e.g. 'km', 'lb', 'celsius'"},
        "to_unit": {"type": "string", "description": "Target unit, e.g. 'miles', 'kg', 'fahrenheit'"},
    }
    required = ["value", "from_unit", "to_unit"]

    # unit -> (dimension, factor to the dimension's base unit)
    _linear = {
        "m": ("length", 1.0),
        "km": ("length", 1000.0),
        "miles": ("length", 1609.344),
        "ft": ("length", 0.3048),
        "kg": ("mass", 1.0),
        "g": ("mass", 0.001),
        "lb": ("mass", 0.45359237),
    }
    # unit -> (to kelvin, from kelvin)
    _temperature = {
        "kelvin": (lambda v: v, lambda k: k),
        "celsius": (lambda v: v + 273.15, lambda k: k - 273.15),
        "fahrenheit": (lambda v: (v - 32) * 5 / 9 + 273.15, lambda k: (k - 273.15) * 9 / 5 + 32),
    }

    def handle(self, params: dict) -> dict:
        value = _require_number(params, "value")
        from_unit = str(params.get("from_unit", "")).lower()
        to_unit = str(params.get("to_unit", "")).lower()

        if from_unit in self._temperature and to_unit in self._temperature:
            kelvin = self._temperature[from_unit][0](value)
            result = self._temperature[to_unit][1](kelvin)
        elif from_unit in self._linear and to_unit in self._linear \
                and self._linear[from_unit][0] == self._linear[to_unit][0]:
            result = value * self._linear[from_unit][1] / self._linear[to_unit][1]
        else:
            known = sorted([*self._linear, *self._temperature])
            raise ValueError(f"Cannot convert {from_unit!r} to {to_unit!r}. Known units: {known}")

        return {"value": value, "from": from_unit, "to": to_unit, "result": round(result, 6)}


def build_server() -> StdioToolServer:
    server = StdioToolServer("calculator", version="1.1.0")
    server.register(AddTool())
    server.register(CalculateTool())
    server.register(ConvertUnitsTool())
    return server


if __name__ == "__main__":
    configure_server_logging()
    build_server().run()
