"""Input provider base module"""

from hm10drive.inputs.mock_input import MockInput, TestScripts

__all__ = ["MockInput", "TestScripts"]
