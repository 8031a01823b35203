from typing import Any, Dict, Optional

from cloudfleet.database import models


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def project_to_dict(project: models.Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "owner_id": project.owner_id,
        "name": project.name,
        "description": project.description,
        "config": project.config or {},
        "created_at": _iso(project.created_at),
    }


def user_to_dict(user: models.User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": _value(user.role),
        "public_ssh_key": user.public_ssh_key,
        "created_at": _iso(user.created_at),
    }


def ssh_key_to_dict(key: models.SSHKey) -> Dict[str, Any]:
    return {
        "id": key.id,
        "owner_id": key.owner_id,
        "name": key.name,
        "public_key": key.public_key,
        "created_at": _iso(key.created_at),
    }


def instance_to_dict(instance: models.Instance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "owner_id": instance.owner_id,
        "project_id": instance.project_id,
        "last_task_id": instance.last_task_id,
        "provider_id": _value(instance.provider_id),
        "provider_instance_id": instance.provider_instance_id,
        "name": instance.name,
        "status": _value(instance.status),
        "payload_status": _value(instance.payload_status),
        "public_ip": instance.public_ip,
        "region": instance.region,
        "size": instance.size,
        "image": instance.image,
        "tags": instance.tags or [],
        "volume_ids": instance.volume_ids or [],
        "volume_details": instance.volume_details or [],
        "created_at": _iso(instance.created_at),
        "updated_at": _iso(instance.updated_at),
    }


def task_to_dict(task: models.Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "owner_id": task.owner_id,
        "project_id": task.project_id,
        "action": _value(task.action),
        "status": _value(task.status),
        "priority": task.priority,
        "payload": task.payload or {},
        "result": task.result,
        "error": task.error,
        "logs": task.logs,
        "attempts": task.attempts,
        "webhook_url": task.webhook_url,
        "webhook_sent": task.webhook_sent,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }
