# (c) Copyright 2022 Aaron Kimball
#
# Optional pre-session build step, and cargo project artifact paths.

import os.path
import shlex
import subprocess
import tomllib

import espmon.chips as chips
from espmon.term import MsgLevel


class BuildError(Exception):
    """ The build command could not run or did not succeed. """
    pass


def run_build_hook(argv, print_q, cwd=None):
    """
    Run a build command to completion with stdio inherited from this process.

    @param argv the command; a list of arguments or a shell-style string.
    @param cwd directory to run it in; the current directory if None.
    @return True if the command exited with status 0.
    """
    if isinstance(argv, str):
        argv = shlex.split(argv)
    if not argv:
        raise BuildError('Empty build command')

    print_q.put((f"Building: {' '.join(argv)}", MsgLevel.INFO))
    print_q.join()  # Don't let our status line land in the middle of the build output.
    try:
        ret = subprocess.run(argv, cwd=cwd, check=False).returncode
    except OSError as e:
        print_q.put((f"Could not run build command '{argv[0]}': {e}", MsgLevel.ERR))
        return False

    if ret != 0:
        print_q.put((f"Build failed with exit status {ret}", MsgLevel.ERR))
        return False

    return True


def cargo_package_name(project_dir='.'):
    """
    Return the [package] name from the project's Cargo.toml.
    """
    manifest = os.path.join(project_dir, 'Cargo.toml')
    try:
        with open(manifest, 'rb') as f:
            data = tomllib.load(f)
    except OSError as e:
        raise BuildError(f'Cannot read {manifest}: {e}') from e
    except tomllib.TOMLDecodeError as e:
        raise BuildError(f'Cannot parse {manifest}: {e}') from e

    try:
        return data['package']['name']
    except (KeyError, TypeError):
        raise BuildError(f'No [package] name in {manifest}') from None


def cargo_build_command(chip, framework, release=False, example=None):
    """
    Return the argv that builds the firmware for `chip` with cargo.
    """
    argv = ['cargo', 'build']
    if release:
        argv.append('--release')
    if example:
        argv.extend(['--example', example])
    argv.extend(['--target', chips.Chip.target(chip, framework)])
    return argv


def cargo_artifact(chip, framework, release=False, example=None, project_dir='.'):
    """
    Return the path of the ELF image cargo produces for the given build:
    target/<triple>/<debug|release>/[examples/]<name>
    """
    profile_dir = 'release' if release else 'debug'
    parts = [project_dir, 'target', chips.Chip.target(chip, framework), profile_dir]
    if example:
        parts.extend(['examples', example])
    else:
        parts.append(cargo_package_name(project_dir))
    return os.path.normpath(os.path.join(*parts))
