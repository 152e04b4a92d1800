"""File tools: create, read, edit, delete, list and search sandbox files."""

from burrow.tools.registry import Tool


class CreateFileTool(Tool):
    """Write a new file, creating parent directories."""

    name = "create_file"

    def run(self, path: str, content: str, **kwargs: str) -> str:
        return self.store.create(path, content)


class ReadFileTool(Tool):
    name = "read_file"

    def run(self, path: str, **kwargs: str) -> str:
        content = self.store.read(path)
        return f"Contents of {self.store.sanitize(path)}:\n{content}"


class EditFileTool(Tool):
    """Overwrite a file that must already exist."""

    name = "edit_file"

    def run(self, path: str, content: str, **kwargs: str) -> str:
        return self.store.edit(path, content)


class DeleteFileTool(Tool):
    name = "delete_file"

    def run(self, path: str, **kwargs: str) -> str:
        return self.store.delete(path)


class ListFilesTool(Tool):
    name = "list_files"

    def run(self, directory: str, **kwargs: str) -> str:
        return self.store.format_listing(directory)


class SearchFilesTool(Tool):
    """Case-insensitive substring search across .md and .txt files."""

    name = "search_files"

    def run(self, query: str, **kwargs: str) -> str:
        return self.store.format_search(query)
