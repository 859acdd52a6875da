def _format_duration(seconds: int | None) -> str:
    if seconds is None:
        return "unknown"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"


def render_transcript(session: dict, chunks: list[dict], summary: dict | None) -> str:
    """Plain-text export of a session, built from persisted rows."""
    lines = [
        f"Session: {session.get('title') or 'Untitled session'}",
        f"ID: {session['id']}",
        f"State: {session['state']}",
        f"Started: {session['started_at']}",
        f"Ended: {session.get('ended_at') or '-'}",
        f"Duration: {_format_duration(session.get('duration_sec'))}",
        "",
        "=" * 60,
        "TRANSCRIPT",
        "=" * 60,
        "",
    ]

    texts = []
    for chunk in sorted(chunks, key=lambda c: c["chunk_index"]):
        text = (chunk.get("text") or "").strip()
        if not text:
            continue
        if chunk.get("speaker"):
            text = f"{chunk['speaker']}: {text}"
        texts.append(text)
    lines.extend(texts or ["(no transcript available)"])

    lines += ["", "=" * 60, "SUMMARY", "=" * 60, ""]
    if summary is None:
        lines.append("(no summary available)")
        return "\n".join(lines) + "\n"

    lines.append(summary["content"])
    lines += ["", "Key points:"]
    lines.extend(f"{i}. {p}" for i, p in enumerate(summary["key_points"], 1))
    if not summary["key_points"]:
        lines.append("(none)")
    lines += ["", "Action items:"]
    lines.extend(f"{i}. {a}" for i, a in enumerate(summary["action_items"], 1))
    if not summary["action_items"]:
        lines.append("(none)")
    return "\n".join(lines) + "\n"
