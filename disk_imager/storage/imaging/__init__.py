"""Backup, restore and verification of block device images.

Main Classes:
    - BackupEngine: capture a device into a new backup set
    - RestoreEngine: replay a backup set onto a device
    - Verifier: check a backup set, optionally against a live device
    - Auditor: post-backup audit that writes audit_report.txt

Data Models:
    - BackupSet: read-only view of a backup directory
    - PreflightReport / BackupResult / RestoreResult / VerificationReport
"""
from .backup import BackupEngine, BackupResult, PartitionPlan, PreflightReport
from .backup_set import BackupSet, ManifestWriter, sha256_file
from .restore import CONFIRMATION_PHRASE, RestoreEngine, RestoreResult
from .verification import Auditor, AuditReport, VerificationReport, Verifier


__all__ = [
    "Auditor",
    "AuditReport",
    "BackupEngine",
    "BackupResult",
    "BackupSet",
    "CONFIRMATION_PHRASE",
    "ManifestWriter",
    "PartitionPlan",
    "PreflightReport",
    "RestoreEngine",
    "RestoreResult",
    "VerificationReport",
    "Verifier",
    "sha256_file",
]
