"""Provision Let's Encrypt certificates for Proxmox VE and Proxmox Backup Server
using the Cloudflare DNS-01 challenge."""

__version__ = "1.0.0"
