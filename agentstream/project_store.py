from typing import Dict, List, Optional


class ProjectStore:
    """In-memory files per project, shared by every request the process serves.

    There is no locking. Tool calls inside one request run one at a time, but two
    requests on the same project id can interleave their writes.
    """

    def __init__(self) -> None:
        self._projects: Dict[str, Dict[str, str]] = {}

    def get(self, project_id: str, path: str) -> Optional[str]:
        return self._projects.get(project_id, {}).get(path)

    def set(self, project_id: str, path: str, content: str) -> None:
        self._projects.setdefault(project_id, {})[path] = content

    def delete(self, project_id: str, path: str) -> bool:
        files = self._projects.get(project_id)
        if not files or path not in files:
            return False
        del files[path]
        return True

    def list(self, project_id: str) -> List[str]:
        return sorted(self._projects.get(project_id, {}))

    def snapshot(self, project_id: str) -> Dict[str, str]:
        return dict(self._projects.get(project_id, {}))

    def restore(self, project_id: str, files: Dict[str, str]) -> None:
        self._projects[project_id] = dict(files)
