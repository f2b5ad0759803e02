"""Server templates and cloud-init bootstrap scripts."""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

from .models import ServerMode


@dataclass(frozen=True)
class TemplateDefaults:
    region: str
    size: str


@dataclass(frozen=True)
class Template:
    name: str
    description: str
    defaults: Dict[str, TemplateDefaults] = field(default_factory=dict)
    full_setup: bool = False


TEMPLATES: Dict[str, Template] = {
    "starter": Template(
        name="starter",
        description="Minimal setup for trying out the platform (cheapest option)",
        defaults={
            "hetzner": TemplateDefaults("nbg1", "cax11"),
            "digitalocean": TemplateDefaults("fra1", "s-2vcpu-2gb"),
        },
    ),
    "production": Template(
        name="production",
        description="Production-ready setup with firewall and SSH hardening",
        defaults={
            "hetzner": TemplateDefaults("nbg1", "cx33"),
            "digitalocean": TemplateDefaults("fra1", "s-2vcpu-4gb"),
        },
        full_setup=True,
    ),
    "dev": Template(
        name="dev",
        description="Development/testing environment (cheap, no hardening)",
        defaults={
            "hetzner": TemplateDefaults("nbg1", "cax11"),
            "digitalocean": TemplateDefaults("fra1", "s-2vcpu-2gb"),
        },
    ),
}


def get_template(name: str) -> Optional[Template]:
    return TEMPLATES.get(name)


def get_template_defaults(name: str, provider: str) -> Optional[TemplateDefaults]:
    template = get_template(name)
    if template is None:
        return None
    return template.defaults.get(provider)


def sanitize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9-]", "", name)


_HEADER = """#!/bin/bash
set +e
touch /var/log/vpsops-install.log
chmod 600 /var/log/vpsops-install.log
exec > >(tee /var/log/vpsops-install.log) 2>&1

echo "Bootstrapping server: {name}"

# cloud-init can start before the network is up
ATTEMPTS=0
while [ $ATTEMPTS -lt 30 ]; do
  if curl -s --max-time 5 {probe_url} > /dev/null 2>&1; then
    break
  fi
  ATTEMPTS=$((ATTEMPTS + 1))
  sleep 2
done

apt-get update -y
"""

_MANAGED_BODY = """
curl -fsSL https://cdn.coollabs.io/coolify/install.sh | bash
sleep 30

if command -v ufw &> /dev/null; then
  for port in 22 80 443 8000 6001 6002; do ufw allow $port/tcp; done
  echo "y" | ufw enable || true
else
  for port in 22 80 443 8000; do iptables -A INPUT -p tcp --dport $port -j ACCEPT; done
  iptables -A INPUT -m state --state ESTABLISHED,RELATED -j ACCEPT
  mkdir -p /etc/iptables
  iptables-save > /etc/iptables/rules.v4 || true
  DEBIAN_FRONTEND=noninteractive apt-get install -y iptables-persistent || true
fi

echo "Platform installed. Dashboard: http://YOUR_SERVER_IP:8000"
"""

_BARE_BODY = """
DEBIAN_FRONTEND=noninteractive apt-get -y upgrade
DEBIAN_FRONTEND=noninteractive apt-get install -y ufw fail2ban unattended-upgrades

ufw default deny incoming
ufw default allow outgoing
for port in 22 80 443; do ufw allow $port/tcp; done
echo "y" | ufw enable || true
systemctl enable --now fail2ban || true

echo "Base system ready."
"""


def get_bootstrap_script(server_name: str, mode: ServerMode = ServerMode.MANAGED) -> str:
    """cloud-init user data for a new server in the given mode."""
    name = sanitize_name(server_name)
    if mode is ServerMode.MANAGED:
        header = _HEADER.format(name=name, probe_url="https://cdn.coollabs.io")
        return header + _MANAGED_BODY
    elif mode is ServerMode.BARE:
        header = _HEADER.format(name=name, probe_url="https://deb.debian.org")
        return header + _BARE_BODY
    raise ValueError(f"Unsupported server mode: {mode}")
