import posixpath
from pathlib import Path

from site_mirror import bs4_parse, collect_links, local_path, rewrite_links

HOST = "example.com"
ROOT = Path("example.com")

DOC = """
<html><head>
<link rel="stylesheet" href="/css/site.css">
<script src="js/app.js"></script>
</head><body>
<a href="/about">About</a>
<a href="https://example.com/blog/#latest">Blog</a>
<a href="//example.com/contact">Contact</a>
<a href="https://other.org/page">Elsewhere</a>
<a href="mailto:hi@example.com">Mail</a>
<a href="ftp://example.com/file.txt">FTP</a>
<img src="../img/logo.png" alt="logo">
<img alt="no source">
</body></html>
"""


class TestCollectLinks:
    def test_classifies_pages_and_resources(self):
        soup = bs4_parse(DOC)
        resources, pages = collect_links(soup, "https://example.com/docs/index", HOST)
        assert resources == [
            "https://example.com/css/site.css",
            "https://example.com/docs/js/app.js",
            "https://example.com/img/logo.png",
        ]
        assert pages == [
            "https://example.com/about",
            "https://example.com/blog/",
            "https://example.com/contact",
        ]

    def test_protocol_relative_inherits_base_scheme(self):
        soup = bs4_parse('<a href="//example.com/x">x</a>')
        _, pages = collect_links(soup, "http://example.com/", HOST)
        assert pages == ["http://example.com/x"]

    def test_other_host_and_port_are_excluded(self):
        soup = bs4_parse('<a href="https://example.com:8443/x">x</a><img src="https://cdn.example.com/a.png">')
        assert collect_links(soup, "https://example.com/", HOST) == ([], [])

    def test_base_element_changes_resolution(self):
        soup = bs4_parse('<head><base href="https://example.com/sub/"></head><a href="page">p</a>')
        _, pages = collect_links(soup, "https://example.com/", HOST)
        assert pages == ["https://example.com/sub/page"]

    def test_malformed_link_is_skipped(self):
        soup = bs4_parse('<a href="http://[::1">bad</a><a href="/ok">ok</a>')
        _, pages = collect_links(soup, "https://example.com/", HOST)
        assert pages == ["https://example.com/ok"]


class TestRewriteLinks:
    def test_same_host_links_point_at_local_copies(self):
        base = "https://example.com/docs/index.html"
        current = local_path(ROOT, base)
        soup = bs4_parse(DOC)
        rewrite_links(soup, base, HOST, ROOT, current)

        assert soup.find("link")["href"] == "../css/site.css"
        assert soup.find("script")["src"] == "js/app.js"
        assert soup.find("img")["src"] == "../img/logo.png"
        hrefs = [a["href"] for a in soup.find_all("a")]
        assert hrefs[0] == "../about/index.html"
        assert hrefs[1] == "../blog/index.html#latest"
        assert hrefs[2] == "../contact/index.html"

    def test_rewritten_links_resolve_to_target_local_path(self):
        targets = [
            "https://example.com/",
            "https://example.com/a/b/c",
            "https://example.com/x.css",
            "https://example.com/deep/er/img.png",
            "https://example.com/docs/guide/",
        ]
        base = "https://example.com/docs/guide/"
        current = local_path(ROOT, base)
        soup = bs4_parse("".join(f'<a href="{t}">t</a>' for t in targets))
        rewrite_links(soup, base, HOST, ROOT, current)

        for target, a in zip(targets, soup.find_all("a")):
            joined = posixpath.normpath(posixpath.join(current.parent.as_posix(), a["href"]))
            assert joined == local_path(ROOT, target).as_posix()

    def test_off_host_links_untouched(self):
        soup = bs4_parse(DOC)
        rewrite_links(soup, "https://example.com/", HOST, ROOT, ROOT / "index.html")
        hrefs = [a["href"] for a in soup.find_all("a")]
        assert "https://other.org/page" in hrefs
        assert "mailto:hi@example.com" in hrefs

    def test_self_link_points_at_own_file(self):
        soup = bs4_parse('<a href="">me</a><a href="#top">top</a>')
        rewrite_links(soup, "https://example.com/", HOST, ROOT, ROOT / "index.html")
        assert [a["href"] for a in soup.find_all("a")] == ["index.html", "index.html#top"]

    def test_same_host_base_points_at_document_directory(self):
        soup = bs4_parse('<head><base href="https://example.com/sub/"></head><a href="page">p</a>')
        current = local_path(ROOT, "https://example.com/")
        rewrite_links(soup, "https://example.com/", HOST, ROOT, current)
        assert soup.find("base")["href"] == "./"
        assert soup.find("a")["href"] == "sub/page/index.html"

    def test_returns_count(self):
        soup = bs4_parse('<a href="/a">a</a><a href="https://x.org/">x</a>')
        assert rewrite_links(soup, "https://example.com/", HOST, ROOT, ROOT / "index.html") == 1

    def test_reserved_characters_in_local_names_stay_encoded(self):
        soup = bs4_parse('<a href="/a%3Fb.html">q</a><img src="/my%20file.png">')
        rewrite_links(soup, "https://example.com/", HOST, ROOT, ROOT / "index.html")
        assert soup.find("a")["href"] == "a%3Fb.html"
        assert soup.find("img")["src"] == "my%20file.png"
