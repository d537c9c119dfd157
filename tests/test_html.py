from programme_scout.services.html import extract_link_contexts, html_to_markdown

LISTING = """
<html><body>
  <header><a href="/">Home</a></header>
  <ul>
    <li>
      <h3>2026 Summer Analyst - Investment Banking</h3>
      <p>London | Applications open</p>
      <a href="/jobs/123?utm_source=feed#apply">Apply now</a>
    </li>
    <li>
      <h3>2026 Summer Analyst - Investment Banking</h3>
      <a href="/jobs/123?utm_source=feed#apply">Duplicate</a>
    </li>
  </ul>
  <div class="card">
    <div><h4>Spring Week</h4><span><a href="https://careers.example.com/jobs/456" aria-label="Spring Week details"></a></span></div>
  </div>
  <a href="mailto:careers@example.com">Email us</a>
  <a href="https://www.linkedin.com/company/example">LinkedIn</a>
  <a href="/brochure.pdf">Brochure</a>
  <a href="/empty"></a>
</body></html>
"""


def test_extract_link_contexts_collects_card_context() -> None:
    contexts = extract_link_contexts(LISTING, "https://careers.example.com/students")
    by_url = {context.url: context for context in contexts}

    assert set(by_url) == {
        "https://careers.example.com/",
        "https://careers.example.com/jobs/123?utm_source=feed",
        "https://careers.example.com/jobs/456",
    }
    job = by_url["https://careers.example.com/jobs/123?utm_source=feed"]
    assert job.text == "Apply now"
    assert job.headings == ["2026 Summer Analyst - Investment Banking"]
    assert "London | Applications open" in job.card_text

    spring = by_url["https://careers.example.com/jobs/456"]
    assert spring.text == ""
    assert spring.aria_label == "Spring Week details"
    assert spring.headings == ["Spring Week"]


def test_card_text_is_truncated() -> None:
    html = f'<li><h3>Role</h3><p>{"x" * 800}</p><a href="https://e.com/r">Apply</a></li>'
    (context,) = extract_link_contexts(html, "https://e.com/")
    assert len(context.card_text) == 503
    assert context.card_text.endswith("...")


def test_as_prompt_item_uses_camel_case_keys() -> None:
    (context,) = extract_link_contexts('<li><h3>Role</h3><a href="https://e.com/r">Apply</a></li>', "https://e.com/")
    item = context.as_prompt_item(0)
    assert item["index"] == 0
    assert item["linkText"] == "Apply"
    assert item["headings"] == ["Role"]


def test_html_to_markdown_keeps_main_content() -> None:
    html = """
    <html><body>
      <nav>Menu</nav>
      <div class="cookie-banner">We use cookies</div>
      <main>
        <h1>Summer Analyst</h1>
        <p>Join our <a href="/ib">Investment Banking</a> team.</p>
        <ul><li>Online application</li><li>Interview</li></ul>
      </main>
      <footer>Footer</footer>
      <script>var x = 1;</script>
    </body></html>
    """
    text = html_to_markdown(html)
    assert "# Summer Analyst" in text
    assert "[Investment Banking](/ib)" in text
    assert "- Online application" in text
    assert "- Interview" in text
    assert "Menu" not in text
    assert "cookies" not in text
    assert "Footer" not in text
    assert "var x" not in text
    assert "\n\n\n" not in text
