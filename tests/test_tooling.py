import importlib.util
import os

import run_tests

# load the generator script by path; scripts/ is not a package
spec = importlib.util.spec_from_file_location(
    'generate_test_images', os.path.join(os.path.dirname(__file__), '..', 'scripts', 'generate_test_images.py'))
generate_test_images = importlib.util.module_from_spec(spec)
spec.loader.exec_module(generate_test_images)


def test_default_pytest_command_has_coverage():
    cmd = run_tests.build_pytest_cmd(run_tests.parse_args([]))
    assert cmd[0] == 'pytest'
    assert '--cov=benchmark' in cmd
    assert '--cov-report=term-missing' in cmd
    assert '-m' not in cmd


def test_marker_selection():
    cmd = run_tests.build_pytest_cmd(run_tests.parse_args(['--no-coverage', '--edge-cases-only', '--integration-only']))
    assert not any(c.startswith('--cov') for c in cmd)
    assert cmd[cmd.index('-m') + 1] == 'edge or integration'
    fast = run_tests.build_pytest_cmd(run_tests.parse_args(['--fast', '--ci']))
    assert fast[fast.index('-m') + 1] == 'not integration'
    assert '--junitxml=test_reports/junit.xml' in fast


def test_tiers_straddle_policy_thresholds():
    mp = {tier: [w * h / 1e6 for w, h in sizes] for tier, sizes in generate_test_images.TIERS.items()}
    assert max(mp['small']) < 4
    assert all(4 <= m < 25 for m in mp['medium'])
    assert min(mp['large']) >= 25


def test_make_scene_size():
    img = generate_test_images.make_scene(64, 48)
    assert img.size == (64, 48)
    assert img.mode == 'RGBA'
