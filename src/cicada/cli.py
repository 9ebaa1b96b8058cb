"""
Command-line interface for CIcaDA
Key generation, storage, backup, rotation, audit and GitHub deployment
"""

import argparse
import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .version import __version__
from .config import CicadaConfig, default_config_path, init_config_dirs, load_config, save_config
from .crypto import postquantum
from .crypto.backup import BackupManager
from .crypto.keygen import generate_hybrid_key_pairs, generate_key_pair
from .crypto.provider import KeyMaterialProvider, get_key_provider
from .crypto.rotation import RotationEngine
from .crypto.storage import KeyStore
from .crypto.types import KeyAlgorithm, KeyPurpose, utc_now
from .exceptions import ConfigurationError
from .integrations.github import GitHubKeyRegistry
from .logging_utils import AuditSink, configure_logging, get_default_audit_sink
from .validation import Validator

HYBRID = 'hybrid'


@dataclass
class CliContext:
    """Configuration and wired components for one invocation"""
    config: CicadaConfig
    config_path: Path
    provider: KeyMaterialProvider
    audit_sink: AuditSink
    store: KeyStore
    backups: BackupManager
    rotation: RotationEngine
    validator: Validator


def build_context(config_path: Path) -> CliContext:
    config = load_config(config_path)
    provider = get_key_provider(config.key_provider)
    audit_sink = get_default_audit_sink()
    store = KeyStore(provider, audit_sink)
    backups = BackupManager(store, audit_sink)
    return CliContext(
        config=config,
        config_path=config_path,
        provider=provider,
        audit_sink=audit_sink,
        store=store,
        backups=backups,
        rotation=RotationEngine(store, backups, provider, audit_sink),
        validator=Validator(provider),
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog='cicada',
        description='CIcaDA key management: generate, store, back up, rotate and audit SSH keys'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'CIcaDA {__version__}'
    )
    parser.add_argument('--config', help='Configuration file (default: $CICADA_CONFIG or ~/.cicada/config.json)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug output')
    parser.add_argument('-q', '--quiet', action='store_true', help='Errors only')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    setup_key_parsers(subparsers)
    setup_lifecycle_parsers(subparsers)
    setup_github_parser(subparsers)

    return parser


def setup_key_parsers(subparsers):
    """Setup key management subcommands."""
    init_parser = subparsers.add_parser('init', help='Initialize configuration and directories')
    init_parser.add_argument('--force', action='store_true', help='Overwrite an existing configuration')

    generate_parser = subparsers.add_parser('generate', help='Generate a new key pair')
    generate_parser.add_argument('--email', '-e', required=True, help='Email address for the key')
    generate_parser.add_argument(
        '--algorithm', '-a',
        help='Key algorithm (ed25519, rsa2048, rsa4096, ecdsa256, ecdsa384, dilithium2, dilithium3, '
             'dilithium5, kyber512, kyber768, kyber1024, hybrid); default from config'
    )
    generate_parser.add_argument('--comment', '-c', default='', help='Comment for the key')
    generate_parser.add_argument('--purpose', choices=[p.value for p in KeyPurpose], help='Key purpose')
    expiry = generate_parser.add_mutually_exclusive_group()
    expiry.add_argument('--expires', help='Expiration date (YYYY-MM-DD)')
    expiry.add_argument('--expires-days', type=int, help='Expire after N days')
    generate_parser.add_argument('--name', '-n', help='Custom base name for the key files')

    list_parser = subparsers.add_parser('list', help='List stored keys')
    list_parser.add_argument('--format', '-f', choices=['table', 'json'], default='table', help='Output format')
    list_parser.add_argument('--details', action='store_true', help='Show paths and fingerprints')

    info_parser = subparsers.add_parser('info', help='Show detailed information about a key')
    info_parser.add_argument('--id', required=True, help='Key ID (UUID)')

    export_parser = subparsers.add_parser('export', help='Export a public key')
    export_parser.add_argument('--id', required=True, help='Key ID (UUID)')
    export_parser.add_argument('--output', '-o', required=True, help='Output file')

    delete_parser = subparsers.add_parser('delete', help='Delete a stored key')
    delete_parser.add_argument('--id', required=True, help='Key ID (UUID)')
    delete_parser.add_argument('--confirm', action='store_true', help='Skip confirmation prompt')

    validate_parser = subparsers.add_parser('validate', help='Validate a key pair')
    validate_parser.add_argument('--id', required=True, help='Key ID to validate')

    audit_parser = subparsers.add_parser('audit', help='Security audit of keys')
    audit_parser.add_argument('--id', help='Key ID to audit (omit for all keys)')
    audit_parser.add_argument('--format', '-f', choices=['table', 'json'], default='table', help='Output format')

    subparsers.add_parser('pqc-info', help='Show post-quantum support information')


def setup_lifecycle_parsers(subparsers):
    """Setup backup, restore and rotation subcommands."""
    backup_parser = subparsers.add_parser('backup', help='Back up keys')
    backup_parser.add_argument('--id', help='Key ID to back up (omit for all keys)')
    backup_parser.add_argument('--clean', type=int, metavar='N',
                               help='Remove old backups, keeping the N most recent per key')
    backup_parser.add_argument('--list', action='store_true', help='List existing backups')
    backup_parser.add_argument('--passphrase-env', metavar='VAR',
                               help='Encrypt private key copies with the passphrase in this environment variable')

    restore_parser = subparsers.add_parser('restore', help='Restore a key from a backup')
    restore_parser.add_argument('--backup-path', required=True, help='Path to the backup directory')
    restore_parser.add_argument('--passphrase-env', metavar='VAR',
                                help='Environment variable holding the backup passphrase')

    rotate_parser = subparsers.add_parser('rotate', help='Rotate keys (back up old, generate new)')
    target = rotate_parser.add_mutually_exclusive_group()
    target.add_argument('--id', help='Key ID to rotate')
    target.add_argument('--auto', action='store_true', help='Rotate keys that expire soon')
    target.add_argument('--all', action='store_true', help='Rotate all keys (security incident)')
    rotate_parser.add_argument('--warning-days', type=int, help='Days before expiration that trigger rotation')
    rotate_parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation with --all')
    rotate_parser.add_argument('--passphrase-env', metavar='VAR',
                               help='Encrypt the backups taken before rotation')

    report_parser = subparsers.add_parser('report', help='Expiry report for all keys')
    report_parser.add_argument('--warning-days', type=int, help='Expiry warning window in days')
    report_parser.add_argument('--format', '-f', choices=['table', 'json'], default='table', help='Output format')


def setup_github_parser(subparsers):
    """Setup GitHub subcommands."""
    github_parser = subparsers.add_parser('github', help='GitHub integration commands')
    github_parser.add_argument('--token', help='GitHub personal access token (default from config)')
    github_subparsers = github_parser.add_subparsers(dest='github_command', help='GitHub commands')

    upload_parser = github_subparsers.add_parser('upload', help='Upload a public key')
    upload_parser.add_argument('--id', required=True, help='Local key ID')
    upload_parser.add_argument('--title', help='Title for the uploaded key')

    github_subparsers.add_parser('list', help='List keys registered on GitHub')

    delete_parser = github_subparsers.add_parser('delete', help='Delete a key from GitHub')
    delete_parser.add_argument('--github-key-id', type=int, required=True, help='GitHub key ID')

    github_subparsers.add_parser('verify-token', help='Check that the token is valid')


def parse_expiry(args) -> Optional[datetime]:
    if getattr(args, 'expires_days', None) is not None:
        if args.expires_days <= 0:
            raise ConfigurationError("--expires-days must be positive", "INVALID_EXPIRY")
        return utc_now() + timedelta(days=args.expires_days)
    if getattr(args, 'expires', None):
        try:
            return datetime.strptime(args.expires, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError as e:
            raise ConfigurationError("Invalid date format. Use YYYY-MM-DD", "INVALID_DATE") from e
    return None


def passphrase_from_env(variable: Optional[str]) -> Optional[str]:
    if not variable:
        return None
    value = os.environ.get(variable)
    if not value:
        raise ConfigurationError(f"Environment variable {variable} is not set", "MISSING_PASSPHRASE")
    return value


def confirm(prompt: str) -> bool:
    response = input(prompt)
    return response.strip().lower() in ['y', 'yes']


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def handle_init_command(args, ctx: CliContext) -> int:
    """Handle configuration initialization."""
    if ctx.config_path.exists() and not args.force:
        print(f"Configuration already exists at {ctx.config_path}")
        print("Use --force to re-initialize")
        return 0

    init_config_dirs(ctx.config)
    save_config(ctx.config, ctx.config_path)

    print("✓ Configuration initialized")
    print(f"  Config file: {ctx.config_path}")
    print(f"  Key directory: {ctx.config.key_dir}")
    print(f"  Backup directory: {ctx.config.backup_dir}")
    return 0


def handle_generate_command(args, ctx: CliContext) -> int:
    """Handle key generation."""
    expires_at = parse_expiry(args)
    algorithm_name = (args.algorithm or ctx.config.default_algorithm).strip().lower()
    key_dir = ctx.config.key_dir

    if algorithm_name == HYBRID:
        classical, pqc = generate_hybrid_key_pairs(
            args.email, args.comment, expires_at, ctx.provider, ctx.audit_sink
        )
        classical_paths = ctx.store.save(classical, key_dir, f"{args.name}_ed25519" if args.name else None)
        pqc_paths = ctx.store.save(pqc, key_dir, f"{args.name}_dilithium3" if args.name else None)

        print("✓ Hybrid quantum-resistant key pair generated!")
        print(f"  Classical ({classical.metadata.algorithm.display_name}): {classical.id}")
        print(f"    Private key: {classical_paths[0]}")
        print(f"    Public key: {classical_paths[1]}")
        print(f"  Post-quantum ({pqc.metadata.algorithm.display_name}): {pqc.id}")
        print(f"    Private key: {pqc_paths[0]}")
        print(f"    Public key: {pqc_paths[1]}")
        print(f"\n⚠ Note: {postquantum.PLACEHOLDER_NOTICE}")
        return 0

    algorithm = KeyAlgorithm.parse(algorithm_name)
    key_pair = generate_key_pair(
        algorithm,
        args.email,
        comment=args.comment,
        expires_at=expires_at,
        purpose=KeyPurpose.parse(args.purpose) if args.purpose else None,
        provider=ctx.provider,
        audit_sink=ctx.audit_sink,
    )
    private_path, public_path, _ = ctx.store.save(key_pair, key_dir, args.name)

    print("✓ Key pair generated successfully!")
    print(f"  Key ID: {key_pair.id}")
    print(f"  Algorithm: {algorithm.display_name}")
    print(f"  Private key: {private_path}")
    print(f"  Public key: {public_path}")
    print(f"  Fingerprint: {key_pair.metadata.fingerprint}")
    print(f"  Quantum-resistant: {key_pair.metadata.quantum_resistant}")
    if key_pair.metadata.quantum_resistant:
        print(f"\n⚠ Note: {postquantum.PLACEHOLDER_NOTICE}")
    return 0


def handle_list_command(args, ctx: CliContext) -> int:
    """Handle listing stored keys."""
    records = ctx.store.list(ctx.config.key_dir)

    if args.format == 'json':
        print_json([r.to_dict() for r in records])
        return 0

    if not records:
        print(f"No keys found in {ctx.config.key_dir}")
        return 0

    print(f"Stored keys ({len(records)} total):\n")
    for i, record in enumerate(records, 1):
        state = ctx.rotation.key_state(record, ctx.config.warning_days)
        print(f"[{i}] {record.id}")
        print(f"    Algorithm: {record.algorithm.display_name}")
        print(f"    Email: {record.email}")
        print(f"    Created: {record.created_at.isoformat()}")
        print(f"    Quantum-resistant: {record.quantum_resistant}")
        print(f"    State: {state.value}")
        if record.expires_at is not None:
            print(f"    Expires: {record.expires_at.isoformat()}")
        if args.details:
            print(f"    Private key: {record.private_key_path}")
            print(f"    Public key: {record.public_key_path}")
            if record.fingerprint:
                print(f"    Fingerprint: {record.fingerprint}")
        print()
    return 0


def handle_info_command(args, ctx: CliContext) -> int:
    """Handle showing one key."""
    record = ctx.store.find(args.id, ctx.config.key_dir)
    if record is None:
        print(f"Key not found: {args.id}", file=sys.stderr)
        return 1

    print("Key Information:")
    print(f"  ID: {record.id}")
    print(f"  Algorithm: {record.algorithm.display_name}")
    print(f"  Purpose: {record.purpose.value}")
    print(f"  Email: {record.email}")
    print(f"  Comment: {record.comment}")
    print(f"  Created: {record.created_at.isoformat()}")
    print(f"  Quantum-resistant: {record.quantum_resistant}")
    print(f"  Fingerprint: {record.fingerprint}")
    print(f"  Private key: {record.private_key_path}")
    print(f"  Public key: {record.public_key_path}")
    print(f"  Expires: {record.expires_at.isoformat() if record.expires_at else 'Never'}")
    if record.superseded_by:
        print(f"  Superseded by: {record.superseded_by}")
    return 0


def handle_export_command(args, ctx: CliContext) -> int:
    """Handle public key export."""
    path = ctx.store.export_public(args.id, ctx.config.key_dir, args.output)
    print(f"✓ Public key exported to {path}")
    return 0


def handle_delete_command(args, ctx: CliContext) -> int:
    """Handle deleting a stored key."""
    if not args.confirm:
        if not confirm(f"Are you sure you want to delete key '{args.id}'? (y/N): "):
            print("Operation cancelled")
            return 0

    if not ctx.store.delete(args.id, ctx.config.key_dir):
        print(f"Key not found: {args.id}", file=sys.stderr)
        return 1
    print(f"✓ Key deleted: {args.id}")
    return 0


def handle_validate_command(args, ctx: CliContext) -> int:
    """Handle key validation."""
    key_pair = ctx.store.load(args.id, ctx.config.key_dir)
    if key_pair is None:
        print(f"Key not found: {args.id}", file=sys.stderr)
        return 1

    print(f"Validating key {key_pair.id}...")
    valid, issues = ctx.validator.validate_key_pair(key_pair, ctx.config.warning_days)
    if valid:
        print("✓ Key is valid")
        return 0

    print("✗ Key validation failed:")
    for issue in issues:
        print(f"  - {issue}")
    return 1


def _print_audit(audit) -> None:
    print(f"Key: {audit['id']}")
    if 'algorithm' in audit:
        print(f"  Algorithm: {audit['algorithm']} ({audit['key_size']} bits)")
        print(f"  Quantum-resistant: {audit['quantum_resistant']}")
        print(f"  Created: {audit['created_at']}")
        print(f"  Age: {audit['age_days']} days")
        print(f"  Expiration: {audit['expiration']}")
        print(f"  Expired: {audit['expired']}")
        print(f"  Strong: {audit['strong']}")
        print(f"  Assessment: {audit['strength_message']}")
    print(f"  Valid: {audit['valid']}")
    if audit['issues']:
        print("  Issues:")
        for issue in audit['issues']:
            print(f"    - {issue}")
    print()


def handle_audit_command(args, ctx: CliContext) -> int:
    """Handle security audit."""
    warning_days = ctx.config.warning_days
    if args.id:
        key_pair = ctx.store.load(args.id, ctx.config.key_dir)
        if key_pair is None:
            print(f"Key not found: {args.id}", file=sys.stderr)
            return 1
        audit = ctx.validator.audit_key(key_pair, warning_days)
        if args.format == 'json':
            print_json(audit)
        else:
            _print_audit(audit)
        return 0

    report = ctx.validator.audit_directory(ctx.store, ctx.config.key_dir, warning_days)
    if args.format == 'json':
        print_json(report)
        return 0

    print(f"Security Audit ({report['total_keys']} keys):\n")
    for audit in report['keys']:
        _print_audit(audit)
    print(f"Valid: {report['valid']}  Invalid: {report['invalid']}  "
          f"Expired: {report['expired']}  Weak: {report['weak']}  "
          f"Quantum-resistant: {report['quantum_resistant']}")
    if report['consistency_issues']:
        print("\nStorage issues:")
        for issue in report['consistency_issues']:
            missing = f" missing {', '.join(issue['missing'])}" if issue['missing'] else ""
            error = f" {issue['error']}" if issue['error'] else ""
            print(f"  - {issue['name']}:{missing}{error}")
    return 0


def handle_backup_command(args, ctx: CliContext) -> int:
    """Handle backups and backup cleanup."""
    backup_dir = ctx.config.backup_dir

    if args.list:
        manifests = ctx.backups.list(backup_dir)
        if not manifests:
            print(f"No backups found in {backup_dir}")
            return 0
        for manifest in manifests:
            encrypted = " (encrypted)" if manifest.encrypted else ""
            print(f"{manifest.backup_date}  {manifest.key_id}  {manifest.email}{encrypted}")
            print(f"    {manifest.path}")
        return 0

    if args.clean is not None:
        count = ctx.backups.clean_old(backup_dir, keep=args.clean)
        print(f"✓ Cleaned {count} old backups")
        return 0

    passphrase = passphrase_from_env(args.passphrase_env)
    if args.id:
        path = ctx.backups.backup_one(args.id, ctx.config.key_dir, backup_dir, passphrase)
        print(f"✓ Key backed up to {path}")
    else:
        paths = ctx.backups.backup_all(ctx.config.key_dir, backup_dir, passphrase)
        print(f"✓ Backed up {len(paths)} keys to {backup_dir}")
    return 0


def handle_restore_command(args, ctx: CliContext) -> int:
    """Handle restoring a backup."""
    passphrase = passphrase_from_env(args.passphrase_env)
    key_id = ctx.backups.restore(args.backup_path, ctx.config.key_dir, passphrase)
    print(f"✓ Key restored: {key_id}")
    return 0


def handle_rotate_command(args, ctx: CliContext) -> int:
    """Handle key rotation."""
    config = ctx.config
    passphrase = passphrase_from_env(args.passphrase_env)
    warning_days = args.warning_days if args.warning_days is not None else config.warning_days

    if args.all:
        print("⚠ WARNING: This will rotate ALL keys!")
        print("This should only be done in response to a security incident.")
        if not args.yes and not confirm("Continue? (yes/no): "):
            print("Cancelled")
            return 0
        rotated = ctx.rotation.rotate_all(config.key_dir, config.backup_dir, config.new_expiry_days, passphrase)
        print(f"\n✓ Rotated {len(rotated)} keys")
    elif args.auto:
        rotated = ctx.rotation.auto_rotate_expiring(
            config.key_dir, config.backup_dir, warning_days, config.new_expiry_days, passphrase
        )
        if not rotated:
            print("✓ No keys need rotation")
            return 0
        print(f"✓ Auto-rotated {len(rotated)} expiring keys")
    elif args.id:
        expires_at = utc_now() + timedelta(days=config.new_expiry_days)
        mapping = ctx.rotation.rotate_one(
            args.id, config.key_dir, config.backup_dir, expires_at=expires_at, passphrase=passphrase
        )
        print("✓ Key rotated")
        print(f"  Old: {mapping.old_id}")
        print(f"  New: {mapping.new_id}")
        return 0
    else:
        print("Error: Specify --id, --auto, or --all", file=sys.stderr)
        return 1

    for old_id, new_id in rotated:
        print(f"  {old_id} -> {new_id}")
    return 0


def handle_report_command(args, ctx: CliContext) -> int:
    """Handle the expiry report."""
    warning_days = args.warning_days if args.warning_days is not None else ctx.config.warning_days
    report = ctx.rotation.rotation_report(ctx.config.key_dir, warning_days)

    if args.format == 'json':
        print_json(report)
        return 0

    print(f"Rotation report ({report['total_keys']} keys, warning window {warning_days} days):")
    print(f"  Healthy: {report['healthy']}")
    print(f"  Expiring soon: {report['expiring_soon']}")
    print(f"  Expired: {report['expired']}")
    print(f"  No expiration: {report['no_expiration']}")
    print(f"  Superseded: {report['superseded']}")
    if report['expiring_keys']:
        print("\nKeys needing attention:")
        for entry in report['expiring_keys']:
            print(f"  {entry['status']:<14} {entry['id']}  {entry['email']}  {entry['expires_at']}")
    return 0


def handle_github_command(args, ctx: CliContext) -> int:
    """Handle GitHub commands."""
    if not args.github_command:
        print("Error: No github subcommand specified", file=sys.stderr)
        return 1

    token = args.token or ctx.config.github_token
    with GitHubKeyRegistry(token, audit_sink=ctx.audit_sink) as registry:
        if args.github_command == 'upload':
            result = registry.upload(ctx.store, args.id, ctx.config.key_dir, title=args.title)
            print("✓ Key uploaded to GitHub")
            print(f"  GitHub Key ID: {result['github_key_id']}")
            print(f"  Title: {result['title']}")
        elif args.github_command == 'list':
            keys = registry.list_keys()
            print(f"GitHub SSH Keys ({len(keys)} total):\n")
            for i, key in enumerate(keys, 1):
                print(f"[{i}] ID: {key['id']}")
                print(f"    Title: {key['title']}")
                print(f"    Created: {key['created_at']}")
                print()
        elif args.github_command == 'delete':
            registry.delete(args.github_key_id)
            print("✓ Key deleted from GitHub")
        elif args.github_command == 'verify-token':
            if not registry.verify_token():
                print("✗ GitHub token is invalid")
                return 1
            print("✓ GitHub token is valid")
    return 0


def handle_pqc_info_command(args, ctx: CliContext) -> int:
    """Handle post-quantum support information."""
    info = postquantum.pqc_info()
    print("Post-Quantum Cryptography Support:")
    print(f"  Available: {info['available']}")
    print(f"  Implementation: {info['implementation']}")
    print("\nSupported algorithms:")
    for name in info['supported_algorithms']:
        print(f"  - {name}")
    print(f"\nNote: {info['note']}")
    return 0


COMMAND_HANDLERS = {
    'init': handle_init_command,
    'generate': handle_generate_command,
    'list': handle_list_command,
    'info': handle_info_command,
    'export': handle_export_command,
    'delete': handle_delete_command,
    'validate': handle_validate_command,
    'audit': handle_audit_command,
    'backup': handle_backup_command,
    'restore': handle_restore_command,
    'rotate': handle_rotate_command,
    'report': handle_report_command,
    'github': handle_github_command,
    'pqc-info': handle_pqc_info_command,
}


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for the CLI

    Args:
        argv: Command line arguments (None to use sys.argv)

    Returns:
        int: Exit code (0 for success, non-zero for failure)
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config_path = Path(args.config).expanduser() if args.config else default_config_path()
        ctx = build_context(config_path)

        verbosity = ctx.config.verbosity
        if args.verbose:
            verbosity = 3
        elif args.quiet:
            verbosity = 0
        configure_logging(verbosity)

        return COMMAND_HANDLERS[args.command](args, ctx)

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
