"""The data layer and CLI helpers must import without the web stack."""

from __future__ import annotations

import importlib
import sys
import types
import unittest
from typing import Dict, Optional

_BLOCKED = ("fastapi", "uvicorn")


def _package_modules() -> Dict[str, types.ModuleType]:
    return {
        name: module
        for name, module in sys.modules.items()
        if name == "userservice" or name.startswith("userservice.")
    }


class DataLayerImportTests(unittest.TestCase):
    def setUp(self) -> None:
        self._saved_package = _package_modules()
        self._saved_blocked: Dict[str, Optional[types.ModuleType]] = {
            name: sys.modules.get(name) for name in _BLOCKED
        }
        for name in self._saved_package:
            del sys.modules[name]
        for name in _BLOCKED:
            sys.modules[name] = None  # type: ignore[assignment]

    def tearDown(self) -> None:
        for name in list(_package_modules()):
            del sys.modules[name]
        sys.modules.update(self._saved_package)
        for name, module in self._saved_blocked.items():
            if module is None:
                sys.modules.pop(name, None)
            else:
                sys.modules[name] = module

    def test_database_module_imports_without_web_stack(self) -> None:
        database_module = importlib.import_module("userservice.database")
        package = sys.modules["userservice"]

        self.assertTrue(hasattr(database_module, "Database"))
        self.assertIs(package.Database, database_module.Database)
        self.assertNotIn("userservice.service", sys.modules)

    def test_app_factory_needs_web_stack_only_when_called(self) -> None:
        package = importlib.import_module("userservice")

        with self.assertRaises(ImportError):
            package.create_app(database=None)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
