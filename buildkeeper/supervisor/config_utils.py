import shutil
import logging

from buildkeeper.config import MergedSettings

log = logging.getLogger(__name__)


def check_configuration(config: MergedSettings) -> bool:
    """
    Validates that the application directory and the delegated commands exist.

    :param config: The effective settings.
    :return: True if everything required was found, otherwise False.
    """
    log.info("Performing configuration and path validation...")
    all_ok = True

    if not config.APP_DIR.is_dir():
        log.error(f"CONFIG CHECK FAILED: application directory '{config.APP_DIR}' does not exist")
        return False
    log.info(f"Config Check OK: application directory '{config.APP_DIR}'")

    manifest = config.app_path(config.MANIFEST_FILE)
    if not manifest.is_file():
        log.warning(f"Config Check: manifest '{manifest}' not found. Installs will hash it as absent.")

    checks = {
        "Install": "INSTALL_COMMAND",
        "Build": "BUILD_COMMAND",
        "Start": "START_COMMAND",
    }
    for name, key in checks.items():
        try:
            args = config.split_command(key)
        except (ValueError, KeyError, IndexError) as e:
            log.error(f"CONFIG CHECK FAILED: {name} command is malformed: {e}")
            all_ok = False
            continue
        if not args:
            log.error(f"CONFIG CHECK FAILED: {name} command is empty")
            all_ok = False
            continue
        path_exe = shutil.which(args[0])
        if path_exe is None:
            log.error(f"CONFIG CHECK FAILED: {name} executable '{args[0]}' not found on PATH")
            all_ok = False
        else:
            log.info(f"Config Check OK: Found {name} executable at '{path_exe}'")
    return all_ok


def write_npmrc(config: MergedSettings) -> None:
    """
    Writes the package manager settings file before an install.

    Nothing is written when NPMRC_LINES is empty.
    """
    if not config.NPMRC_LINES:
        return
    npmrc_path = config.app_path(".npmrc")
    content = "\n".join(config.NPMRC_LINES) + "\n"
    try:
        if npmrc_path.exists() and npmrc_path.read_text() == content:
            return
        npmrc_path.write_text(content)
        log.info(f"Wrote package manager settings to '{npmrc_path}'.")
    except OSError as e:
        log.error(f"Failed to write '{npmrc_path}': {e}")
