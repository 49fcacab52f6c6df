#!/usr/bin/env python3
"""
Preseed Generation for Preseed ISO Builder

This module renders the debian-installer preseed file that answers every
installer question: locale, network, mirror, clock, partitioning, user
account, package selection, bootloader and post-install commands.

Two partitioning layouts exist. The standard layout is the guided "atomic"
LVM recipe using the whole disk. The hardened layout is an explicit expert
recipe with separate /boot/efi and /boot partitions and logical volumes for
/, /home, /var, /tmp and swap, with restrictive mount options on /home and
/tmp. Hardening also adds a firewall and file integrity monitoring.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Union

from preseed_iso.logger import PreseedLogger, LogCategory

PRESEED_FILENAME = "preseed.cfg"

BASE_PACKAGES = [
    "curl", "wget", "sudo", "vim", "net-tools",
    "apt-transport-https", "ca-certificates", "gnupg",
]
HARDENING_PACKAGES = ["ufw", "aide", "aide-common"]

STANDARD_PARTITIONING = """\
d-i partman-auto/method string lvm
d-i partman-auto-lvm/guided_size string max
d-i partman-auto/choose_recipe select atomic"""

HARDENED_PARTITIONING = """\
d-i partman-auto/method string lvm
d-i partman-lvm/device_remove_lvm boolean true
d-i partman-lvm/confirm boolean true
d-i partman-lvm/confirm_nooverwrite boolean true
d-i partman-auto/expert_recipe string \\
  efi-boot-root-home-var-tmp :: \\
    512 512 512 fat32 \\
      $primary{ } $bootable{ } method{ efi } format{ } \\
      mountpoint{ /boot/efi } . \\
    512 1024 1024 ext4 \\
      $primary{ } \\
      method{ format } format{ } \\
      use_filesystem{ } filesystem{ ext4 } \\
      mountpoint{ /boot } . \\
    20000 30000 -1 lvm \\
      $lvmok{ } \\
      method{ lvm } \\
      vg_name{ vg0 } . \\
    8000 10000 35% logical \\
      $lvmok{ } lv_name{ lv_root } \\
      method{ format } format{ } \\
      use_filesystem{ } filesystem{ ext4 } \\
      mountpoint{ / } . \\
    4000 8000 25% logical \\
      $lvmok{ } lv_name{ lv_home } \\
      method{ format } format{ } \\
      use_filesystem{ } filesystem{ ext4 } \\
      options{ nodev,nosuid } \\
      mountpoint{ /home } . \\
    4000 8000 25% logical \\
      $lvmok{ } lv_name{ lv_var } \\
      method{ format } format{ } \\
      use_filesystem{ } filesystem{ ext4 } \\
      mountpoint{ /var } . \\
    2000 4000 10% logical \\
      $lvmok{ } lv_name{ lv_tmp } \\
      method{ format } format{ } \\
      use_filesystem{ } filesystem{ ext4 } \\
      options{ nodev,nosuid,noexec } \\
      mountpoint{ /tmp } . \\
    1000 2000 100% logical \\
      $lvmok{ } lv_name{ lv_swap } \\
      method{ swap } format{ } \\
      use_filesystem{ } filesystem{ swap } \\
      mountpoint{ none } ."""

PARTITIONING_CONFIRMATION = """\
d-i partman-partitioning/confirm_write_new_label boolean true
d-i partman/choose_partition select finish
d-i partman/confirm boolean true
d-i partman/confirm_nooverwrite boolean true"""


@dataclass(frozen=True)
class PreseedOptions:
    """Inputs that fully determine the generated preseed file."""
    username: str
    hashed_password: str
    hardening: bool = False


def package_selection(hardening: bool) -> List[str]:
    packages = list(BASE_PACKAGES)
    if hardening:
        packages.extend(HARDENING_PACKAGES)
    return packages


def partitioning_section(hardening: bool) -> str:
    layout = HARDENED_PARTITIONING if hardening else STANDARD_PARTITIONING
    return f"{layout}\n{PARTITIONING_CONFIRMATION}"


def late_command(username: str) -> str:
    """Post-install commands: passwordless sudo, then a full upgrade and cache cleanup."""
    sudoers_file = f"/etc/sudoers.d/010_{username}-nopasswd"
    apt_options = '-o Dpkg::Options::="--force-confdef" -o Dpkg::Options::="--force-confold"'
    commands = [
        f"in-target sh -c 'echo \"{username} ALL=(ALL) NOPASSWD: ALL\" > {sudoers_file}"
        f" && chmod 0440 {sudoers_file}'",
        "in-target apt-get update",
        f"in-target env DEBIAN_FRONTEND=noninteractive apt-get -y {apt_options} dist-upgrade",
        "in-target apt-get -y autoremove",
        "in-target apt-get -y clean",
    ]
    return "d-i preseed/late_command string \\\n  " + " && \\\n  ".join(commands)


def render_preseed(options: PreseedOptions) -> str:
    """
    Render the complete preseed document.

    The output depends only on the options, so rendering twice yields
    identical text.
    """
    hardening = "true" if options.hardening else "false"
    username = options.username

    return f"""#Hardening Applied: {hardening}

d-i debian-installer/language string en
d-i debian-installer/country string US
d-i debian-installer/locale string en_US.UTF-8
d-i console-setup/ask_detect boolean false
d-i keyboard-configuration/xkb-keymap select us

d-i netcfg/choose_interface select auto
d-i netcfg/dhcp_timeout string 60
d-i netcfg/get_hostname string debian-preseed
d-i netcfg/get_domain string localdomain

d-i mirror/country string manual
d-i mirror/http/hostname string deb.debian.org
d-i mirror/http/directory string /debian
d-i mirror/http/proxy string

d-i clock-setup/utc boolean true
d-i time/zone string Europe/Amsterdam
d-i clock-setup/ntp boolean true

{partitioning_section(options.hardening)}

d-i partman/early_command string debconf-set partman-auto/init_automatically_partition select biggest_free

d-i passwd/root-login boolean false
d-i passwd/user-fullname string {username}
d-i passwd/username string {username}
d-i passwd/user-password-crypted password {options.hashed_password}
d-i passwd/user-default-groups string adm cdrom dip lpadmin plugdev sambashare sudo
d-i user-setup/allow-password-weak boolean true
d-i user-setup/encrypt-home boolean false

tasksel tasksel/first multiselect standard, ssh-server
d-i pkgsel/include string {' '.join(package_selection(options.hardening))}
d-i pkgsel/upgrade select full-upgrade
d-i pkgsel/update-policy select none

d-i grub-installer/only_debian boolean true
d-i grub-installer/with_other_os boolean true

d-i finish-install/reboot_in_progress note

{late_command(username)}
"""


def write_preseed(options: PreseedOptions, preseed_path: Union[str, Path],
                  logger: PreseedLogger) -> Path:
    """
    Write the preseed file, replacing any previous one at the same path.

    Args:
        options: Account and hardening inputs
        preseed_path: Destination file
        logger: Session logger

    Returns:
        Path of the written file
    """
    preseed_path = Path(preseed_path)
    logger.log_info(LogCategory.PRESEED, "generate_preseed",
                    f"Generating preseed configuration file: {preseed_path} "
                    f"(Hardening: {'true' if options.hardening else 'false'})")

    if preseed_path.exists():
        logger.log_warning(LogCategory.PRESEED, "generate_preseed",
                           "Preseed configuration file already exists. Overwriting...")

    preseed_path.parent.mkdir(parents=True, exist_ok=True)
    preseed_path.write_text(render_preseed(options))

    logger.log_info(LogCategory.PRESEED, "generate_preseed",
                    f"{preseed_path} generated successfully.")
    return preseed_path
