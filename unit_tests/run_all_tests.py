#!/usr/bin/env python3
"""
Run all unit tests for the RTI solver generator
"""

import unittest
import sys
import os

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

# Import all test modules
from test_operands import TestProgramBuilder, TestIndexExpr, TestFormatValue
from test_expressions import TestExpressions, TestAssignments
from test_control import TestBlocksAndLoops, TestFunctions, TestExternalFunctions
from test_emitter import TestCCodeEmitter
from test_specializer import (TestProblemShape, TestHessianSeeds, TestRTIGenerator,
                              TestRuntimeHessianBlocks, TestLoadProblem)
from test_integration import TestExport, TestCommandLine, TestCompilation


def create_test_suite():
    """Create comprehensive test suite"""
    suite = unittest.TestSuite()

    # Add all test classes
    test_classes = [
        TestProgramBuilder,
        TestIndexExpr,
        TestFormatValue,
        TestExpressions,
        TestAssignments,
        TestBlocksAndLoops,
        TestFunctions,
        TestExternalFunctions,
        TestCCodeEmitter,
        TestProblemShape,
        TestHessianSeeds,
        TestRTIGenerator,
        TestRuntimeHessianBlocks,
        TestLoadProblem,
        TestExport,
        TestCommandLine,
        TestCompilation,
    ]

    for test_class in test_classes:
        tests = unittest.TestLoader().loadTestsFromTestCase(test_class)
        suite.addTests(tests)

    return suite


def main():
    """Run all tests with detailed output"""
    print("RTI Solver Generator Unit Test Suite")
    print("=" * 50)

    # Create and run test suite
    suite = create_test_suite()
    runner = unittest.TextTestRunner(verbosity=2, stream=sys.stdout)
    result = runner.run(suite)

    # Summary
    print("\n" + "=" * 50)
    print("Test Summary:")
    print(f"  Tests run: {result.testsRun}")
    print(f"  Failures: {len(result.failures)}")
    print(f"  Errors: {len(result.errors)}")
    print(f"  Skipped: {len(result.skipped)}")

    if result.failures:
        print(f"\nFailures ({len(result.failures)}):")
        for test, traceback in result.failures:
            print(f"  {test}: {traceback.strip().splitlines()[-1]}")

    if result.errors:
        print(f"\nErrors ({len(result.errors)}):")
        for test, traceback in result.errors:
            print(f"  {test}: {traceback.strip().splitlines()[-1]}")

    success = result.wasSuccessful()

    if success:
        print("\nALL TESTS PASSED!")
        print("The RTI generator is working correctly:")
        print("  - Operands and index arithmetic")
        print("  - Expression shapes and given folding")
        print("  - Blocks, loops, functions and external calls")
        print("  - C emission, native and unrolled")
        print("  - RTI specialization with the HPMPC backend")
        print("  - Export, command line and compilation")
    else:
        print("\nSome tests failed. Check details above.")

    return success


if __name__ == '__main__':
    success = main()
    sys.exit(0 if success else 1)
