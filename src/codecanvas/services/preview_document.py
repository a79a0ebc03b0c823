from __future__ import annotations

import html
import textwrap

_PREVIEW_TEMPLATE = textwrap.dedent(
    """
    <!DOCTYPE html>
    <html lang="en">
      <head>
        <meta charset="UTF-8" />
        <meta name="viewport" content="width=device-width, initial-scale=1.0" />
        <title>__TITLE__</title>
        <style>
          body {
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
            margin: 0;
            padding: 20px;
            background-color: #f5f5f5;
          }
          #root {
            background: #fff;
            padding: 20px;
            border-radius: 8px;
            box-shadow: 0 2px 10px rgba(0, 0, 0, 0.1);
            min-height: 200px;
          }
          .error {
            color: #d73a49;
            background: #ffeef0;
            padding: 16px;
            border-radius: 4px;
            border-left: 4px solid #d73a49;
            margin: 10px 0;
            white-space: pre-wrap;
            font-family: ui-monospace, SFMono-Regular, Menlo, monospace;
          }
        </style>
      </head>
      <body>
        <div id="root">__PLACEHOLDER__</div>
        <script>
          function __codecanvasShowError(label, detail) {
            var root = document.getElementById("root");
            var box = document.createElement("div");
            box.className = "error";
            var heading = document.createElement("strong");
            heading.textContent = label;
            box.appendChild(heading);
            box.appendChild(document.createTextNode("\\n" + (detail || "Unknown error")));
            root.innerHTML = "";
            root.appendChild(box);
          }
          window.onerror = function (msg, url, line, column, error) {
            var where = "line " + (line || "?") + ", column " + (column || "?");
            __codecanvasShowError("Runtime Error", msg + " (" + where + ")" + (error && error.stack ? "\\n" + error.stack : ""));
            return false;
          };
          window.addEventListener("unhandledrejection", function (event) {
            __codecanvasShowError("Unhandled Promise Rejection", event.reason ? String(event.reason) : "");
          });
        </script>
        <script>
          try {
    __BUNDLE__
          } catch (error) {
            __codecanvasShowError("Execution Error", (error && error.message) + (error && error.stack ? "\\n" + error.stack : ""));
          }
        </script>
      </body>
    </html>
    """
).strip()


def escape_script(code: str) -> str:
    """Keep bundle text from terminating the surrounding script element."""
    return code.replace("</script", "<\\/script").replace("</SCRIPT", "<\\/SCRIPT")


def render_preview(bundled_code: str, title: str = "Code Preview", react: bool = False) -> str:
    placeholder = "Loading React component..." if react else "Running code..."
    return (
        _PREVIEW_TEMPLATE.replace("__TITLE__", html.escape(title))
        .replace("__PLACEHOLDER__", placeholder)
        .replace("__BUNDLE__", escape_script(bundled_code))
    )
