"""
User-data generation — the payload that turns a fresh VM into a runner.

Linux instances get a ``#cloud-config`` document that drops an install
script on disk and runs it. Windows instances get an EC2 ``<powershell>``
block that does the same job. Either way the script reports progress to
the orchestrator's callback URL, fetches a registration token from the
metadata URL, downloads the runner tool and registers it as ephemeral.
"""

from __future__ import annotations

import base64
import binascii
import logging
import shlex
from typing import Any, Dict, Optional

import yaml

from .errors import UnsupportedOSTypeError
from .params import BootstrapInstance, OSType, RunnerApplicationDownload

logger = logging.getLogger(__name__)

RUNNER_USER = "runner"
INSTALL_SCRIPT_PATH = "/install_runner.sh"


def _decode_ca_bundle(bundle: Optional[str]) -> Optional[str]:
    """Return the PEM text of the CA bundle, if one was supplied.

    GARM sends the bundle base64-encoded; a bundle that is already PEM
    text is passed through.
    """
    if not bundle:
        return None
    if bundle.lstrip().startswith("-----BEGIN"):
        return bundle
    try:
        return base64.b64decode(bundle, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("CA bundle is neither PEM nor base64 PEM; passing it through")
        return bundle


# ---------------------------------------------------------------------------
# Linux
# ---------------------------------------------------------------------------

def _linux_install_script(
    bootstrap: BootstrapInstance,
    tools: RunnerApplicationDownload,
    runner_name: str,
) -> str:
    """Render the bash script that installs and registers the runner."""
    q = shlex.quote
    labels = ",".join(bootstrap.labels)
    group_flag = (
        f"--runnergroup {q(bootstrap.github_runner_group)}"
        if bootstrap.github_runner_group else ""
    )
    checksum = tools.sha256_checksum or ""

    return f"""#!/bin/bash
set -e
set -o pipefail

CALLBACK_URL={q(bootstrap.callback_url)}
METADATA_URL={q(bootstrap.metadata_url)}
BEARER_TOKEN={q(bootstrap.instance_token)}
DOWNLOAD_URL={q(tools.download_url or "")}
DOWNLOAD_TOKEN={q(tools.temp_download_token or "")}
FILENAME={q(tools.filename or "runner.tar.gz")}
CHECKSUM={q(checksum)}
RUNNER_NAME={q(runner_name)}
REPO_URL={q(bootstrap.repo_url)}
LABELS={q(labels)}
RUN_HOME=/home/{RUNNER_USER}/actions-runner

call() {{
    PAYLOAD="$1"
    [ -z "$CALLBACK_URL" ] && return 0
    curl --retry 5 --retry-delay 5 --retry-connrefused --fail -s -X POST \\
        -d "$PAYLOAD" -H 'Accept: application/json' \\
        -H "Authorization: Bearer $BEARER_TOKEN" "$CALLBACK_URL" || echo "failed to call home"
}}

jsonEscape() {{
    printf '%s' "$1" | tr -d '\\r\\n' | sed -e 's/\\\\/\\\\\\\\/g' -e 's/"/\\\\"/g'
}}

sendStatus() {{
    call "{{\\"status\\": \\"installing\\", \\"message\\": \\"$(jsonEscape "$1")\\"}}"
}}

fail() {{
    call "{{\\"status\\": \\"failed\\", \\"message\\": \\"$(jsonEscape "$1")\\"}}"
    exit 1
}}

sendStatus "downloading tools from $DOWNLOAD_URL"
TEMP_TOKEN=""
if [ -n "$DOWNLOAD_TOKEN" ]; then
    TEMP_TOKEN="Authorization: Bearer $DOWNLOAD_TOKEN"
fi
curl --retry 5 --retry-delay 5 --retry-connrefused --fail -L \\
    -H "${{TEMP_TOKEN}}" -o "/home/{RUNNER_USER}/$FILENAME" "$DOWNLOAD_URL" \\
    || fail "failed to download tools"

if [ -n "$CHECKSUM" ]; then
    echo "$CHECKSUM  /home/{RUNNER_USER}/$FILENAME" | sha256sum -c - || fail "checksum mismatch"
fi

mkdir -p "$RUN_HOME" || fail "failed to create actions-runner folder"
sendStatus "extracting runner"
tar xf "/home/{RUNNER_USER}/$FILENAME" -C "$RUN_HOME"/ || fail "failed to extract runner"
chown {RUNNER_USER}:{RUNNER_USER} -R /home/{RUNNER_USER}/ || fail "failed to change owner"

sendStatus "installing dependencies"
cd "$RUN_HOME"
./bin/installdependencies.sh || fail "failed to install dependencies"

sendStatus "fetching runner registration token"
GITHUB_TOKEN=$(curl --retry 5 --retry-delay 5 --retry-connrefused --fail -s \\
    -X GET -H 'Accept: application/json' \\
    -H "Authorization: Bearer $BEARER_TOKEN" "$METADATA_URL/runner-registration-token/") \\
    || fail "failed to get runner registration token"

sendStatus "configuring runner"
sudo -u {RUNNER_USER} -- ./config.sh --unattended --url "$REPO_URL" --token "$GITHUB_TOKEN" \\
    --name "$RUNNER_NAME" --labels "$LABELS" --ephemeral {group_flag} \\
    || fail "failed to configure runner"

sendStatus "installing runner service"
./svc.sh install {RUNNER_USER} || fail "failed to install service"
./svc.sh start || fail "failed to start service"

call "{{\\"status\\": \\"idle\\", \\"message\\": \\"runner successfully installed\\"}}"
"""


def _linux_cloud_config(
    bootstrap: BootstrapInstance,
    tools: RunnerApplicationDownload,
    runner_name: str,
) -> str:
    """Render the full ``#cloud-config`` document for a Linux runner."""
    script = _linux_install_script(bootstrap, tools, runner_name)

    doc: Dict[str, Any] = {
        "package_upgrade": False,
        "packages": ["curl", "tar"],
        "users": [
            "default",
            {
                "name": RUNNER_USER,
                "shell": "/bin/bash",
                "groups": "sudo, adm",
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "lock_passwd": True,
            },
        ],
        "write_files": [
            {
                "path": INSTALL_SCRIPT_PATH,
                "owner": "root:root",
                "permissions": "0755",
                "encoding": "b64",
                "content": base64.b64encode(script.encode("utf-8")).decode("ascii"),
            },
        ],
        "runcmd": [
            INSTALL_SCRIPT_PATH,
            f"rm -f {INSTALL_SCRIPT_PATH}",
        ],
    }

    if bootstrap.ssh_keys:
        doc["users"][1]["ssh_authorized_keys"] = list(bootstrap.ssh_keys)

    ca_bundle = _decode_ca_bundle(bootstrap.ca_cert_bundle)
    if ca_bundle:
        doc["ca_certs"] = {"trusted": [ca_bundle]}

    body = yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)
    return "#cloud-config\n" + body


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------

def _powershell_quote(value: str) -> str:
    """Single-quote a value for PowerShell."""
    return "'" + value.replace("'", "''") + "'"


def _windows_user_data(
    bootstrap: BootstrapInstance,
    tools: RunnerApplicationDownload,
    runner_name: str,
) -> str:
    """Render the EC2 ``<powershell>`` user-data for a Windows runner."""
    q = _powershell_quote
    labels = ",".join(bootstrap.labels)
    group_args = (
        f"'--runnergroup', {q(bootstrap.github_runner_group)},"
        if bootstrap.github_runner_group else ""
    )
    ca_bundle = _decode_ca_bundle(bootstrap.ca_cert_bundle) or ""

    return f"""<powershell>
$ErrorActionPreference = 'Stop'

$CallbackURL = {q(bootstrap.callback_url)}
$MetadataURL = {q(bootstrap.metadata_url)}
$BearerToken = {q(bootstrap.instance_token)}
$DownloadURL = {q(tools.download_url or "")}
$DownloadToken = {q(tools.temp_download_token or "")}
$FileName = {q(tools.filename or "runner.zip")}
$Checksum = {q(tools.sha256_checksum or "")}
$RunnerName = {q(runner_name)}
$RepoURL = {q(bootstrap.repo_url)}
$Labels = {q(labels)}
$CABundle = {q(ca_bundle)}

function Update-Status([string]$Status, [string]$Message) {{
    if (-not $CallbackURL) {{ return }}
    $body = @{{ status = $Status; message = $Message }} | ConvertTo-Json
    try {{
        Invoke-RestMethod -Method Post -Uri $CallbackURL -Body $body `
            -ContentType 'application/json' `
            -Headers @{{ Authorization = "Bearer $BearerToken" }} | Out-Null
    }} catch {{
        Write-Output "failed to call home: $_"
    }}
}}

try {{
    if ($CABundle) {{
        $caPath = Join-Path $env:TEMP 'garm-ca.pem'
        Set-Content -Path $caPath -Value $CABundle
        Import-Certificate -FilePath $caPath -CertStoreLocation Cert:\\LocalMachine\\Root | Out-Null
    }}

    Update-Status 'installing' "downloading tools from $DownloadURL"
    $headers = @{{}}
    if ($DownloadToken) {{ $headers['Authorization'] = "Bearer $DownloadToken" }}
    $runDir = 'C:\\actions-runner'
    New-Item -ItemType Directory -Force -Path $runDir | Out-Null
    $archive = Join-Path $runDir $FileName
    Invoke-WebRequest -UseBasicParsing -Uri $DownloadURL -Headers $headers -OutFile $archive

    if ($Checksum) {{
        $actual = (Get-FileHash -Path $archive -Algorithm SHA256).Hash
        if ($actual -ne $Checksum.ToUpper()) {{ throw 'checksum mismatch' }}
    }}

    Update-Status 'installing' 'extracting runner'
    Expand-Archive -Path $archive -DestinationPath $runDir -Force

    Update-Status 'installing' 'fetching runner registration token'
    $token = Invoke-RestMethod -Method Get -Uri "$MetadataURL/runner-registration-token/" `
        -Headers @{{ Authorization = "Bearer $BearerToken" }}

    Update-Status 'installing' 'configuring runner'
    & (Join-Path $runDir 'config.cmd') '--unattended', '--url', $RepoURL, '--token', $token, `
        '--name', $RunnerName, '--labels', $Labels, {group_args} '--ephemeral', '--runasservice'
    if ($LASTEXITCODE -ne 0) {{ throw "config.cmd exited with $LASTEXITCODE" }}

    Update-Status 'idle' 'runner successfully installed'
}} catch {{
    Update-Status 'failed' "$_"
    throw
}}
</powershell>
"""


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

_GENERATORS = {
    OSType.LINUX: _linux_cloud_config,
    OSType.WINDOWS: _windows_user_data,
}


def get_cloud_config(
    bootstrap: BootstrapInstance,
    tools: RunnerApplicationDownload,
    runner_name: str,
) -> str:
    """Generate user-data for a runner.

    Args:
        bootstrap: The orchestrator's bootstrap request.
        tools: Resolved runner tool download for the target platform.
        runner_name: Name the runner registers under.

    Returns:
        The user-data payload as text.

    Raises:
        UnsupportedOSTypeError: If the OS type has no generator.
    """
    generator = _GENERATORS.get(bootstrap.os_type)
    if generator is None:
        raise UnsupportedOSTypeError(
            f"unsupported OS type for cloud config: {bootstrap.os_type.value}",
            operation="get_cloud_config",
        )
    return generator(bootstrap, tools, runner_name)
