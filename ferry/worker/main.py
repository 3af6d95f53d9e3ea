"""Ferry proxy worker.

Runs as a function inside a remote project. Each execution receives one
transfer task as JSON and copies the bytes straight from the source
endpoint to the destination endpoint:

    {
      "kind": "file" | "deployment",
      "source": {"endpoint": ..., "project": ..., "key": ...},
      "destination": {"endpoint": ..., "project": ..., "key": ...},
      "sourceRef": {...},
      "destinationRef": {...}
    }

Responds with {"success": true, ...} or {"success": false, "status": N, "error": "..."}.
"""

import json

import requests

CHUNK_SIZE = 5 * 1024 * 1024
TIMEOUT = 300


def _session(endpoint):
    session = requests.Session()
    session.headers.update(
        {
            "X-Appwrite-Project": endpoint["project"],
            "X-Appwrite-Key": endpoint["key"],
        }
    )
    return session


def _upload(session, url, field, filename, content, data):
    """Multipart upload, chunked with Content-Range above CHUNK_SIZE."""
    total = len(content)
    if total <= CHUNK_SIZE:
        response = session.post(url, data=data, files={field: (filename, content)}, timeout=TIMEOUT)
        response.raise_for_status()
        return response.json()

    result, upload_id = {}, None
    for start in range(0, total, CHUNK_SIZE):
        end = min(start + CHUNK_SIZE, total) - 1
        headers = {"Content-Range": f"bytes {start}-{end}/{total}"}
        if upload_id:
            headers["X-Appwrite-ID"] = upload_id
        response = session.post(
            url,
            data=data,
            files={field: (filename, content[start : end + 1])},
            headers=headers,
            timeout=TIMEOUT,
        )
        response.raise_for_status()
        result = response.json()
        upload_id = upload_id or result.get("$id")
    return result


def transfer_file(payload):
    src, dst = payload["source"], payload["destination"]
    src_ref, dst_ref = payload["sourceRef"], payload["destinationRef"]
    source = _session(src)

    base = f"{src['endpoint']}/storage/buckets/{src_ref['bucketId']}/files/{src_ref['fileId']}"
    meta = source.get(base, timeout=TIMEOUT)
    meta.raise_for_status()
    meta = meta.json()
    download = source.get(f"{base}/download", timeout=TIMEOUT)
    download.raise_for_status()

    data = {"fileId": dst_ref["fileId"]}
    if meta.get("$permissions"):
        data["permissions[]"] = meta["$permissions"]
    result = _upload(
        _session(dst),
        f"{dst['endpoint']}/storage/buckets/{dst_ref['bucketId']}/files",
        "file",
        meta.get("name") or dst_ref["fileId"],
        download.content,
        data,
    )
    return {"fileId": result.get("$id"), "size": len(download.content)}


def transfer_deployment(payload):
    src, dst = payload["source"], payload["destination"]
    src_ref, dst_ref = payload["sourceRef"], payload["destinationRef"]

    url = (
        f"{src['endpoint']}/functions/{src_ref['functionId']}"
        f"/deployments/{src_ref['deploymentId']}/download"
    )
    download = _session(src).get(url, timeout=TIMEOUT)
    download.raise_for_status()

    data = {"activate": "true"}
    if dst_ref.get("entrypoint"):
        data["entrypoint"] = dst_ref["entrypoint"]
    if dst_ref.get("commands"):
        data["commands"] = dst_ref["commands"]
    result = _upload(
        _session(dst),
        f"{dst['endpoint']}/functions/{dst_ref['functionId']}/deployments",
        "code",
        "code.tar.gz",
        download.content,
        data,
    )
    return {"deploymentId": result.get("$id"), "size": len(download.content)}


HANDLERS = {
    "file": transfer_file,
    "deployment": transfer_deployment,
}


def _parse_body(raw):
    payload = raw
    if isinstance(payload, (bytes, str)):
        payload = json.loads(payload) if payload.strip() else {}
    # Some runtimes wrap the body in {"data": ...}
    if isinstance(payload, dict) and "data" in payload and "kind" not in payload:
        payload = payload["data"]
        if isinstance(payload, str):
            payload = json.loads(payload)
    return payload or {}


def main(context):
    try:
        payload = _parse_body(context.req.body)
        handler = HANDLERS[payload["kind"]]
        result = handler(payload)
        return context.res.json({"success": True, **result})
    except requests.HTTPError as e:
        context.error(f"Remote call failed: {e}")
        return context.res.json(
            {"success": False, "status": e.response.status_code, "error": e.response.text},
            500,
        )
    except (KeyError, ValueError, requests.RequestException) as e:
        context.error(f"Transfer failed: {e}")
        return context.res.json({"success": False, "error": str(e)}, 500)
